from typing import Any, Awaitable, Callable, Dict, List, Optional
from collections import defaultdict
import logging

from crm_automation.schemas.automation import DomainEvent, normalize_event_type
from crm_automation.services.condition_evaluator import _to_number

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[Any]]

ALL_EVENTS = "*"


def _id(entity: Optional[Dict[str, Any]], *keys: str) -> Optional[str]:
    for key in keys:
        value = (entity or {}).get(key)
        if value:
            return str(value)
    return None


def _quote_payload(quote: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    deposit_amount = quote.get("depositAmount") or 0
    deposit_required = (_to_number(deposit_amount) or 0) > 0
    return {
        "quoteId": _id(quote, "id", "quoteId"),
        "projectId": quote.get("projectId"),
        "contactId": quote.get("contactId"),
        "amount": quote.get("total"),
        "quoteTotal": quote.get("total"),
        "quoteCurrency": quote.get("currency") or "USD",
        "quoteNumber": quote.get("quoteNumber"),
        "quoteStatus": quote.get("status"),
        "pipelineId": quote.get("pipelineId"),
        "depositAmount": deposit_amount,
        "depositRequired": deposit_required,
        # older rules read these names
        "quoteDepositAmount": deposit_amount,
        "quoteDepositRequired": deposit_required,
        "quote": {**quote, "depositRequired": deposit_required},
        **extra,
    }


def _appointment_payload(appointment: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    return {
        "appointmentId": _id(appointment, "id", "appointmentId"),
        "projectId": appointment.get("projectId"),
        "contactId": appointment.get("contactId"),
        "calendarId": appointment.get("calendarId"),
        "userId": appointment.get("assignedUserId"),
        "start": appointment.get("start") or appointment.get("startTime"),
        "appointment": appointment,
        **extra,
    }


class EventBus:
    """
    In-process publish/subscribe channel for domain events.

    Handlers subscribe to a normalized event type or to "*". `publish` awaits
    them in subscription order; a failing handler is logged and skipped.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        key = event_type if event_type == ALL_EVENTS else normalize_event_type(event_type)
        self._handlers[key].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        key = event_type if event_type == ALL_EVENTS else normalize_event_type(event_type)
        if handler in self._handlers.get(key, []):
            self._handlers[key].remove(handler)

    def handlers_for(self, event_type: str) -> List[EventHandler]:
        return list(self._handlers.get(normalize_event_type(event_type), [])) + list(
            self._handlers.get(ALL_EVENTS, [])
        )

    async def publish(self, event: DomainEvent) -> List[Any]:
        """Returns the results of the handlers that succeeded."""
        results = []
        for handler in self.handlers_for(event.type):
            try:
                results.append(await handler(event))
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, event.type)
        return results

    async def emit(self, event_type: str, tenant_id: str, data: Dict[str, Any]) -> List[Any]:
        return await self.publish(DomainEvent(type=event_type, tenant_id=tenant_id, data=data))

    # --- Contacts ---
    async def emit_contact_created(self, tenant_id: str, contact: Dict[str, Any]):
        return await self.emit("contact-created", tenant_id, {
            "contactId": _id(contact, "id", "contactId"),
            "contact": contact,
        })

    async def emit_contact_updated(self, tenant_id: str, contact: Dict[str, Any], changes: Dict[str, Any]):
        return await self.emit("contact-updated", tenant_id, {
            "contactId": _id(contact, "id", "contactId"),
            "contact": contact,
            "changes": changes,
        })

    async def emit_contact_tagged(
        self,
        tenant_id: str,
        contact: Dict[str, Any],
        tags_added: List[str],
        tags_removed: Optional[List[str]] = None,
    ):
        return await self.emit("contact-tagged", tenant_id, {
            "contactId": _id(contact, "id", "contactId"),
            "contact": contact,
            "tagsAdded": tags_added,
            "tagsRemoved": tags_removed or [],
            "tags": contact.get("tags") or [],
        })

    async def emit_contact_assigned(self, tenant_id: str, contact: Dict[str, Any], user_id: str):
        return await self.emit("contact-assigned", tenant_id, {
            "contactId": _id(contact, "id", "contactId"),
            "userId": user_id,
            "assignedUserId": user_id,
            "contact": contact,
        })

    # --- Projects ---
    async def emit_project_created(self, tenant_id: str, project: Dict[str, Any]):
        return await self.emit("project-created", tenant_id, {
            "projectId": _id(project, "id", "projectId"),
            "contactId": project.get("contactId"),
            "pipelineId": project.get("pipelineId"),
            "stageId": project.get("stageId"),
            "assignedUserId": project.get("assignedUserId"),
            "project": project,
        })

    async def emit_project_stage_changed(
        self,
        tenant_id: str,
        project: Dict[str, Any],
        from_stage_id: Optional[str],
        to_stage_id: str,
    ):
        return await self.emit("project-stage-changed", tenant_id, {
            "projectId": _id(project, "id", "projectId"),
            "contactId": project.get("contactId"),
            "pipelineId": project.get("pipelineId"),
            "stageId": to_stage_id,
            "fromStageId": from_stage_id,
            "toStageId": to_stage_id,
            "assignedUserId": project.get("assignedUserId"),
            "project": project,
        })

    async def emit_payment_received(self, tenant_id: str, payment: Dict[str, Any]):
        return await self.emit("payment-received", tenant_id, {
            "paymentId": _id(payment, "id", "paymentId"),
            "projectId": payment.get("projectId"),
            "contactId": payment.get("contactId"),
            "quoteId": payment.get("quoteId"),
            "amount": payment.get("amount"),
            "paymentType": payment.get("type"),
            "payment": payment,
        })

    # --- Quotes ---
    async def emit_quote_signed(self, tenant_id: str, quote: Dict[str, Any]):
        return await self.emit("quote-signed", tenant_id, _quote_payload(
            quote, signedAt=quote.get("signedAt"),
        ))

    async def emit_quote_viewed(self, tenant_id: str, quote: Dict[str, Any]):
        return await self.emit("quote-viewed", tenant_id, _quote_payload(quote))

    async def emit_quote_sent(self, tenant_id: str, quote: Dict[str, Any]):
        return await self.emit("quote-sent", tenant_id, _quote_payload(quote))

    async def emit_quote_expired(self, tenant_id: str, quote: Dict[str, Any]):
        return await self.emit("quote-expired", tenant_id, _quote_payload(
            quote, quoteExpirationDate=quote.get("expirationDate"),
        ))

    async def emit_quote_presented(self, tenant_id: str, quote: Dict[str, Any]):
        return await self.emit("quote-presented", tenant_id, _quote_payload(quote))

    async def emit_quote_published(self, tenant_id: str, quote: Dict[str, Any]):
        return await self.emit("quote-published", tenant_id, _quote_payload(quote))

    # --- Appointments ---
    async def emit_appointment_scheduled(self, tenant_id: str, appointment: Dict[str, Any]):
        return await self.emit("appointment-scheduled", tenant_id, _appointment_payload(appointment))

    async def emit_appointment_completed(self, tenant_id: str, appointment: Dict[str, Any]):
        return await self.emit("appointment-completed", tenant_id, _appointment_payload(appointment))

    async def emit_appointment_noshow(self, tenant_id: str, appointment: Dict[str, Any]):
        return await self.emit("appointment-noshow", tenant_id, _appointment_payload(appointment))

    async def emit_appointment_cancelled(self, tenant_id: str, appointment: Dict[str, Any]):
        return await self.emit("appointment-cancelled", tenant_id, _appointment_payload(appointment))

    async def emit_appointment_rescheduled(
        self,
        tenant_id: str,
        old_appointment: Dict[str, Any],
        new_appointment: Dict[str, Any],
    ):
        return await self.emit("appointment-rescheduled", tenant_id, _appointment_payload(
            new_appointment,
            appointmentId=_id(old_appointment, "id", "appointmentId") or _id(new_appointment, "id", "appointmentId"),
            oldTime=old_appointment.get("start") or old_appointment.get("startTime"),
            newTime=new_appointment.get("start") or new_appointment.get("startTime"),
        ))

    # --- Messages / forms / reviews ---
    async def emit_sms_received(self, tenant_id: str, message: Dict[str, Any]):
        return await self.emit("sms-received", tenant_id, dict(message))

    async def emit_email_opened(self, tenant_id: str, message: Dict[str, Any]):
        return await self.emit("email-opened", tenant_id, dict(message))

    async def emit_form_submitted(self, tenant_id: str, submission: Dict[str, Any]):
        return await self.emit("form-submitted", tenant_id, dict(submission))

    async def emit_review_received(self, tenant_id: str, review: Dict[str, Any]):
        return await self.emit("review-received", tenant_id, dict(review))
