from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from dataclasses import dataclass, field
from datetime import date, datetime
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.core import config
from crm_automation.errors import ActionConfigurationError, EffectorError, UnknownActionTypeError
from crm_automation.models.automation_queue import AutomationQueueEntry
from crm_automation.services.condition_evaluator import evaluate_condition, resolve_path
from crm_automation.services.entity_resolver import EntityResolver, parse_entity_ref
from crm_automation.services.template_engine import parse_datetime, replace_variables

logger = logging.getLogger(__name__)

# Every action kind a rule may name
ACTION_TYPES = frozenset({
    # communication
    "send-sms", "send-email", "push-notification", "internal-notification",
    "team-notification", "send-daily-brief",
    # pipeline
    "move-to-stage", "transition-pipeline",
    # assignment
    "assign-user", "round-robin-assign", "unassign",
    # tasks
    "create-task", "schedule-task", "complete-task",
    # tags and fields
    "add-tag", "remove-tag", "update-field", "update-custom-field", "increment-field",
    # documents
    "generate-quote", "generate-invoice", "generate-contract",
    # control flow
    "wait", "conditional", "conditional-action", "keyword-router",
    # integrations
    "enable-tracking", "check-weather",
    # activity
    "add-note", "log-activity", "create-follow-up", "duplicate-check",
    "webhook",
})

Effector = Callable[[Dict[str, Any], "ActionContext"], Awaitable[Any]]


def format_currency(value: Any) -> str:
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        return str(value)
    if amount.is_integer():
        return f"${int(amount):,}"
    return f"${amount:,.2f}"


def format_long_date(value: datetime) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def _as_dict(value: Any) -> Optional[Dict[str, Any]]:
    return dict(value) if isinstance(value, dict) else None


def normalize_quote(quote: Optional[Dict[str, Any]], project: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Template-ready quote: currency strings, `number`, `depositRequired`, a title."""
    if not quote:
        return None
    total = quote.get("total")
    deposit = quote.get("depositAmount")
    deposit_value = deposit if isinstance(deposit, (int, float)) else 0
    return {
        **quote,
        "number": quote.get("quoteNumber") or quote.get("number"),
        "depositRequired": deposit_value > 0,
        "totalValue": total,
        "depositValue": deposit,
        "total": format_currency(total),
        "depositAmount": format_currency(deposit) if deposit else "$0",
        "title": quote.get("title") or quote.get("projectTitle") or (project or {}).get("title") or "Your Project",
    }


@dataclass
class ActionContext:
    """Everything an effector or a template may need for one queued action."""
    tenant_id: str
    rule_id: Optional[str]
    event: Dict[str, Any]
    location: Optional[Dict[str, Any]] = None
    user: Optional[Dict[str, Any]] = None
    contact: Optional[Dict[str, Any]] = None
    project: Optional[Dict[str, Any]] = None
    appointment: Optional[Dict[str, Any]] = None
    quote: Optional[Dict[str, Any]] = None
    contract: Dict[str, Any] = field(default_factory=dict)
    entry_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "location": self.location,
            "user": self.user,
            "rule": {"id": self.rule_id},
            "ruleId": self.rule_id,
            "contact": self.contact,
            "project": self.project,
            "appointment": self.appointment,
            "quote": self.quote,
            "contract": self.contract,
            "company": {"name": (self.location or {}).get("name")},
        }

    def render(self, text: Optional[str]) -> Optional[str]:
        return replace_variables(text, self.as_dict())

    def render_config(self, value: Any) -> Any:
        """Render every string inside an action config."""
        if isinstance(value, str):
            return self.render(value)
        if isinstance(value, dict):
            return {key: self.render_config(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.render_config(item) for item in value]
        return value


class ContextBuilder:
    """
    Builds an ActionContext from a trigger snapshot.

    Lookups are best-effort: a missing entity falls back to the snapshot the
    event carried, and then to None.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def build(
        self,
        trigger: Dict[str, Any],
        tenant_id: str,
        rule_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> ActionContext:
        data = trigger.get("data") or {}
        resolver = EntityResolver(self.db, tenant_id)
        event = {**data, "type": trigger.get("type"), "tenantId": tenant_id, "data": data}

        location = await resolver.location()

        # 1. --- Project ---
        project_row = await resolver.project(parse_entity_ref(data.get("projectId")))
        project = project_row.to_context() if project_row else _as_dict(data.get("project"))

        # 2. --- Contact (event, then the project's contact) ---
        contact_row = await resolver.contact(parse_entity_ref(data.get("contactId")))
        if contact_row is None and project and project.get("contactId"):
            contact_row = await resolver.contact(parse_entity_ref(project["contactId"]))
        contact = contact_row.to_context() if contact_row else _as_dict(data.get("contact"))

        # 3. --- Quote (event, then the project's active or linked quote) ---
        quote_row = await resolver.quote(parse_entity_ref(data.get("quoteId")))
        for key in ("activeQuoteId", "quoteId"):
            if quote_row is not None or not project:
                break
            if project.get(key):
                quote_row = await resolver.quote(parse_entity_ref(project[key]))
        raw_quote = quote_row.to_context() if quote_row else _as_dict(data.get("quote"))

        # 4. --- Appointment ---
        appointment_row = await resolver.appointment(parse_entity_ref(data.get("appointmentId")))
        appointment = appointment_row.to_context() if appointment_row else _as_dict(data.get("appointment"))

        # 5. --- User ---
        user = await self._resolve_user(resolver, data, contact, project)

        return ActionContext(
            tenant_id=tenant_id,
            rule_id=rule_id,
            event=event,
            location=location.to_context() if location else None,
            user=user,
            contact=contact,
            project=project,
            appointment=appointment,
            quote=normalize_quote(raw_quote, project),
            contract={"signedDate": self._signed_date(data, raw_quote, today)},
        )

    @staticmethod
    async def _resolve_user(
        resolver: EntityResolver,
        data: Dict[str, Any],
        contact: Optional[Dict[str, Any]],
        project: Optional[Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        """Event user, then the assignment on the event or contact, then the project's user."""
        candidates = (
            data.get("userId"),
            data.get("assignedUserId"),
            (contact or {}).get("assignedTo"),
            (project or {}).get("assignedUserId"),
        )
        for candidate in candidates:
            user = await resolver.user(parse_entity_ref(candidate))
            if user is not None:
                return user.to_context()
        return None

    @staticmethod
    def _signed_date(data: Dict[str, Any], quote: Optional[Dict[str, Any]], today: Optional[date]) -> str:
        explicit = data.get("signedDate") or data.get("signedAt")
        parsed = parse_datetime(explicit)
        if parsed is not None:
            return format_long_date(parsed)
        if explicit:
            return str(explicit)

        signed_at = parse_datetime((quote or {}).get("signedAt"))
        if signed_at is not None:
            return format_long_date(signed_at)
        return format_long_date(today or date.today())


class ActionRegistry:
    """
    Maps action kinds to effectors.

    Only kinds from ACTION_TYPES can be registered. `missing()` lists the
    kinds nothing handles yet, for startup checks.
    """

    def __init__(self, register_builtins: bool = True):
        self._effectors: Dict[str, Effector] = {}
        if register_builtins:
            self.register("conditional", self._run_conditional)
            self.register("conditional-action", self._run_conditional)
            self.register("keyword-router", self._run_keyword_router)

    def register(self, kind: str, effector: Effector) -> None:
        if kind not in ACTION_TYPES:
            raise UnknownActionTypeError(kind)
        self._effectors[kind] = effector

    def register_many(self, effectors: Dict[str, Effector]) -> None:
        for kind, effector in effectors.items():
            self.register(kind, effector)

    def get(self, kind: str) -> Effector:
        if kind not in ACTION_TYPES:
            raise UnknownActionTypeError(kind)
        effector = self._effectors.get(kind)
        if effector is None:
            raise UnknownActionTypeError(kind, reason="No effector registered for action type")
        return effector

    @property
    def registered(self) -> List[str]:
        return sorted(self._effectors)

    def missing(self) -> List[str]:
        return sorted(ACTION_TYPES - set(self._effectors))

    async def dispatch(self, action: Dict[str, Any], context: ActionContext) -> Any:
        return await self.get(action.get("type"))(action, context)

    # --- Built-in control flow ---
    async def _run_sub_actions(self, actions: Iterable[Dict[str, Any]], context: ActionContext) -> List[Any]:
        results = []
        for sub_action in actions or []:
            try:
                results.append(await self.dispatch(sub_action, context))
            except Exception as e:
                logger.exception("Sub-action %s failed", sub_action.get("type"))
                results.append({"error": str(e), "actionType": sub_action.get("type")})
        return results

    async def _run_conditional(self, action: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
        action_config = action.get("config") or {}
        condition = action_config.get("condition")
        if not isinstance(condition, dict):
            raise ActionConfigurationError("Conditional action requires a condition")

        field_path = condition.get("field")
        if condition.get("entity") and field_path:
            field_path = f"{condition['entity']}.{field_path}"
        subject = {**context.event, **context.as_dict()}
        met = evaluate_condition({**condition, "field": field_path}, subject)

        branch = action_config.get("thenActions" if met else "elseActions") or []
        results = await self._run_sub_actions(branch, context)
        return {"conditionMet": met, "executed": len(results), "results": results}

    async def _run_keyword_router(self, action: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
        action_config = action.get("config") or {}
        keyword_field = action_config.get("keywordField") or "body"
        text = (
            resolve_path(context.event, keyword_field)
            or resolve_path(context.contact or {}, keyword_field)
            or ""
        )
        text = str(text).lower()

        for route in action_config.get("routes") or []:
            keywords = route.get("keywords") or []
            if isinstance(keywords, str):
                keywords = [keywords]
            if any(str(keyword).lower() in text for keyword in keywords):
                results = await self._run_sub_actions(route.get("actions") or [], context)
                return {"routed": True, "route": route.get("name"), "executed": len(results), "results": results}

        return {"routed": False, "message": "No matching route found"}


class ActionDispatcher:
    """Runs one queue entry: builds its context and awaits the registered effector."""

    def __init__(
        self,
        session_factory,
        registry: ActionRegistry,
        timeout_seconds: Optional[float] = config.EFFECTOR_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, entry: AutomationQueueEntry) -> Any:
        action = entry.action or {}
        action_type = action.get("type") or entry.action_type
        effector = self.registry.get(action_type)

        async with self.session_factory() as db:
            context = await ContextBuilder(db).build(entry.trigger or {}, entry.tenant_id, entry.rule_id)
        context.entry_id = entry.entry_id

        call = effector({**action, "type": action_type}, context)
        if not self.timeout_seconds:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise EffectorError(f"{action_type} timed out after {self.timeout_seconds}s")
