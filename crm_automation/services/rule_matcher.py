from typing import Any, Callable, Dict, List, Optional
from datetime import datetime
import logging

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.core.clock import utcnow
from crm_automation.crud import automation_queue as queue_crud
from crm_automation.crud import automation_rules as rule_crud
from crm_automation.models.automation_rule import AutomationRule
from crm_automation.schemas.automation import DomainEvent, MatchReport, RuleOutcome
from crm_automation.services.condition_evaluator import (
    CONTEXT_ALIASES, build_condition_context, evaluate_conditions,
)
from crm_automation.services.deduplicator import Deduplicator, trigger_hash
from crm_automation.services.delay_scheduler import (
    Schedule, reference_time, schedule_for_action, schedule_relative,
    stage_delay_for, time_based_offset,
)

logger = logging.getLogger(__name__)

# Events that move a record into a stage; `stage-entered` rules react to them
STAGE_ENTRY_TYPES = ("project-stage-changed", "stage-entered", "stage-changed")
APPOINTMENT_CANCEL_TYPES = ("appointment-cancelled", "appointment-rescheduled")
TIME_BASED_SOURCE_TYPES = ("appointment-scheduled", "appointment-rescheduled")


def _event_stage(data: Dict[str, Any]) -> Optional[str]:
    return data.get("toStageId") or data.get("stageId") or data.get("newStage")


def trigger_snapshot(event_type: str, tenant_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """`{type, tenantId, data}` with the deposit aliases folded into `data`, JSON-safe."""
    context = build_condition_context(event_type, data)
    folded = {**data, **{alias: context[alias] for alias in CONTEXT_ALIASES}}
    return jsonable_encoder({"type": event_type, "tenantId": tenant_id, "data": folded})


def detach(db: AsyncSession, rules: List[AutomationRule]) -> List[AutomationRule]:
    """Rules are read-only here; detached they survive a rollback of a failed rule."""
    for rule in rules:
        db.expunge(rule)
    return rules


def rule_contradicts_event(rule: AutomationRule, data: Dict[str, Any]) -> bool:
    """True when a stage, pipeline or calendar filter of the rule excludes this event."""
    if rule.stage_id and rule.stage_id != _event_stage(data):
        return True
    pipeline_id = data.get("pipelineId")
    if rule.pipeline_id and pipeline_id and rule.pipeline_id != pipeline_id:
        return True
    calendar_id = data.get("calendarId")
    if rule.calendar_id and calendar_id and rule.calendar_id != calendar_id:
        return True
    return False


class AutomationEventListener:
    """
    Turns domain events into queue entries.

    Responsibilities:
    1. Matching (`handle_event`):
       - Finds the tenant's active rules for the event and drops the ones
         whose filters contradict it.
       - Evaluates each rule's conditions and queues every action through
         the Deduplicator and the delay scheduler.
       - Updates rule execution statistics without failing the event.
    2. Scheduling flows:
       - `project-stage-changed`: cancels stage-delay entries of the stage
         the project left and pre-schedules stage-delay rules of the new one.
       - `appointment-scheduled` / `appointment-rescheduled`: schedules
         time-based rules relative to the appointment start.
    3. Cancellation:
       - `appointment-cancelled` / `appointment-rescheduled` delete the
         appointment's still-scheduled entries.
       - `stage-exited` deletes the project's still-scheduled stage-delay entries.

    A failing rule is logged and reported; the other rules still run.
    """

    def __init__(
        self,
        session_factory,
        redis=None,
        clock: Callable[[], datetime] = utcnow,
        deduplicator: Optional[Deduplicator] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.deduplicator = deduplicator or Deduplicator(redis=redis)

    def attach(self, bus) -> None:
        bus.subscribe("*", self.handle_event)

    async def handle_event(self, event: DomainEvent) -> MatchReport:
        now = self.clock()
        event_type = event.normalized_type
        data = event.data or {}
        report = MatchReport(event_type=event_type, tenant_id=event.tenant_id)

        async with self.session_factory() as db:
            if event_type == "stage-exited":
                report.cancelled += await self._cancel_stage_delays(
                    db, data.get("projectId"), data.get("fromStageId") or data.get("stageId")
                )
                return report

            if event_type == "project-stage-changed":
                report.cancelled += await self._cancel_stage_delays(
                    db, data.get("projectId"), data.get("fromStageId")
                )
                report.rules.extend(await self._schedule_stage_delays(db, event, now))

            if event_type in APPOINTMENT_CANCEL_TYPES:
                report.cancelled += await self._cancel_appointment(db, data.get("appointmentId"))

            report.rules.extend(await self._match_rules(db, event, now))

            if event_type in TIME_BASED_SOURCE_TYPES:
                report.rules.extend(await self._schedule_time_based(db, event, now))

        logger.info(
            "Event %s for tenant %s: %s rules, %s entries queued, %s cancelled",
            event_type, event.tenant_id, len(report.rules), report.queued, report.cancelled,
        )
        return report

    # --- Matching ---
    async def _match_rules(self, db: AsyncSession, event: DomainEvent, now: datetime) -> List[RuleOutcome]:
        event_type = event.normalized_type
        data = event.data or {}
        explicit_rule_id = data.get("ruleId")

        rules = await rule_crud.find_matching_rules(
            db,
            tenant_id=event.tenant_id,
            event_type=event.type,
            normalized_type=event_type,
            stage_id=_event_stage(data) if event_type in STAGE_ENTRY_TYPES else None,
            pipeline_id=data.get("pipelineId"),
            calendar_id=data.get("calendarId"),
            rule_id=explicit_rule_id,
        )

        outcomes = []
        for rule in detach(db, rules):
            if rule.rule_id != explicit_rule_id and rule_contradicts_event(rule, data):
                logger.debug("Rule %s skipped: filters do not match %s", rule.rule_id, event_type)
                continue
            outcomes.append(
                await self._queue_rule_actions(db, rule, event, now, trigger_type=event_type, record_stats=True)
            )
        return outcomes

    async def _queue_rule_actions(
        self,
        db: AsyncSession,
        rule: AutomationRule,
        event: DomainEvent,
        now: datetime,
        trigger_type: str,
        schedule: Optional[Schedule] = None,
        metadata: Optional[Dict[str, Any]] = None,
        record_stats: bool = False,
    ) -> RuleOutcome:
        """
        Evaluate the rule and queue its actions.

        With `schedule` every action uses it, otherwise each action's own
        delay decides. Duplicates are counted and skipped.
        """
        data = event.data or {}
        outcome = RuleOutcome(rule_id=rule.rule_id, rule_name=rule.name)
        rule_id = rule.rule_id

        try:
            context = build_condition_context(event.normalized_type, data)
            if not evaluate_conditions(rule.conditions, context):
                logger.debug("Rule %s: conditions not met", rule_id)
                return outcome
            outcome.conditions_met = True

            actions = rule.actions or []
            hash_value = trigger_hash(rule_id, trigger_type, event.tenant_id, data)
            if actions and await self.deduplicator.is_duplicate_delivery(
                db, hash_value, event.normalized_type, now
            ):
                outcome.duplicates += len(actions)
                return outcome

            snapshot = trigger_snapshot(trigger_type, event.tenant_id, data)
            last_entry_id = None
            for action in actions:
                action_type = action.get("type")
                duplicate, action_hash_value = await self.deduplicator.is_duplicate_action(
                    db, hash_value, action_type, data, now
                )
                if duplicate:
                    outcome.duplicates += 1
                    continue

                planned = schedule or schedule_for_action(action, now)
                entry = await queue_crud.create_entry(
                    db,
                    tenant_id=event.tenant_id,
                    rule_id=rule_id,
                    action=action,
                    trigger=snapshot,
                    status=planned.status,
                    scheduled_for=planned.scheduled_for,
                    metadata={
                        "triggerHash": hash_value,
                        "actionHash": action_hash_value,
                        "projectId": data.get("projectId"),
                        "contactId": data.get("contactId"),
                        **(metadata or {}),
                    },
                    created_at=now,
                )
                last_entry_id = entry.entry_id
                outcome.queued += 1

            if last_entry_id:
                await self.deduplicator.remember_delivery(hash_value, event.normalized_type, last_entry_id)

        except Exception as e:
            logger.exception("Rule %s failed for %s", rule_id, event.normalized_type)
            outcome.error = str(e)
            await db.rollback()

        if record_stats and (outcome.conditions_met or outcome.error):
            await self._record_stats(db, rule_id, success=outcome.error is None, now=now)
        return outcome

    async def _record_stats(self, db: AsyncSession, rule_id: str, success: bool, now: datetime) -> None:
        try:
            await rule_crud.record_execution(db, rule_id, success=success, executed_at=now)
        except Exception:
            logger.exception("Failed to update execution stats for rule %s", rule_id)
            await db.rollback()

    # --- Stage delays ---
    async def _schedule_stage_delays(self, db: AsyncSession, event: DomainEvent, now: datetime) -> List[RuleOutcome]:
        data = event.data or {}
        stage_id = _event_stage(data)
        if not stage_id:
            return []

        rules = await rule_crud.get_active_rules_by_trigger(db, event.tenant_id, "stage-delay", stage_id=stage_id)
        logger.info("Found %s stage-delay rules for stage %s", len(rules), stage_id)

        outcomes = []
        for rule in detach(db, rules):
            try:
                run_at = stage_delay_for(rule.trigger or {}, now)
            except (TypeError, ValueError) as e:
                logger.error("Stage-delay rule %s has an invalid delay: %s", rule.rule_id, e)
                outcomes.append(RuleOutcome(rule_id=rule.rule_id, rule_name=rule.name, error=str(e)))
                continue
            if run_at is None:
                logger.warning("Stage-delay rule %s has no delay configured", rule.rule_id)
                continue
            config = (rule.trigger or {}).get("config") or {}
            outcome = await self._queue_rule_actions(
                db, rule, event, now,
                trigger_type="stage-delay",
                schedule=Schedule(status="scheduled", scheduled_for=run_at),
                metadata={
                    "stageId": stage_id,
                    "projectId": data.get("projectId"),
                    "delayAmount": config.get("delayAmount"),
                    "delayUnit": config.get("delayUnit"),
                },
            )
            if outcome.queued:
                logger.info("Scheduled stage-delay rule %s for %s", rule.rule_id, run_at.isoformat())
            outcomes.append(outcome)
        return outcomes

    async def _cancel_stage_delays(self, db: AsyncSession, project_id: Optional[str], stage_id: Optional[str]) -> int:
        if not project_id:
            return 0
        try:
            deleted = await queue_crud.delete_scheduled_stage_delays(db, project_id, stage_id)
        except Exception:
            logger.exception("Failed to cancel stage-delay entries of project %s", project_id)
            await db.rollback()
            return 0
        if deleted:
            logger.info("Cancelled %s scheduled stage-delay entries for project %s", deleted, project_id)
        return deleted

    # --- Appointment reminders ---
    async def _schedule_time_based(self, db: AsyncSession, event: DomainEvent, now: datetime) -> List[RuleOutcome]:
        data = event.data or {}
        reference = reference_time(data)
        rules = await rule_crud.get_active_rules_by_trigger(
            db, event.tenant_id, "time-based", calendar_id=data.get("calendarId")
        )
        rules = [r for r in rules if (r.trigger or {}).get("entityType") in (None, "appointment")]
        if not rules:
            return []
        if reference is None:
            logger.warning("No appointment start in %s payload; time-based rules skipped", event.normalized_type)
            return []

        outcomes = []
        for rule in detach(db, rules):
            try:
                offset = time_based_offset(rule.trigger or {})
                if offset is None:
                    logger.warning("Time-based rule %s has no offset configured", rule.rule_id)
                    continue
                amount, unit, timing = offset
                run_at = schedule_relative(reference, amount, unit, timing, now)
            except (TypeError, ValueError) as e:
                logger.error("Time-based rule %s has an invalid offset: %s", rule.rule_id, e)
                outcomes.append(RuleOutcome(rule_id=rule.rule_id, rule_name=rule.name, error=str(e)))
                continue
            if run_at is None:
                logger.info("Skipping rule %s: trigger time already passed", rule.rule_id)
                outcomes.append(RuleOutcome(
                    rule_id=rule.rule_id, rule_name=rule.name, discarded=len(rule.actions or []),
                ))
                continue

            outcomes.append(await self._queue_rule_actions(
                db, rule, event, now,
                trigger_type="time-based-trigger",
                schedule=Schedule(status="scheduled", scheduled_for=run_at),
                metadata={
                    "appointmentId": data.get("appointmentId"),
                    "triggerType": "reminder" if timing == "before" else "follow-up",
                    "originalRuleId": rule.rule_id,
                },
            ))
        return outcomes

    async def _cancel_appointment(self, db: AsyncSession, appointment_id: Optional[str]) -> int:
        if not appointment_id:
            return 0
        try:
            deleted = await queue_crud.delete_scheduled_for_appointment(db, appointment_id)
        except Exception:
            logger.exception("Failed to cancel scheduled entries of appointment %s", appointment_id)
            await db.rollback()
            return 0
        logger.info("Cancelled %s scheduled entries for appointment %s", deleted, appointment_id)
        return deleted
