"""Tests for event -> rule matching and queue writes."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from crm_automation.crud import automation_queue as queue_crud
from crm_automation.crud import automation_rules as rule_crud
from crm_automation.models.automation_rule import AutomationRule
from crm_automation.schemas.automation import DomainEvent
from crm_automation.services.event_bus import EventBus
from crm_automation.services.rule_matcher import AutomationEventListener, trigger_snapshot

TENANT = "T1"


async def _entries(session_factory):
    async with session_factory() as session:
        return await queue_crud.list_entries(session, tenant_id=TENANT)


async def _rule(session_factory, rule_id):
    async with session_factory() as session:
        return await rule_crud.get_rule(session, rule_id)


def _event(event_type, **data):
    return DomainEvent(type=event_type, tenant_id=TENANT, data=data)


@pytest.fixture
def listener(session_factory, clock):
    return AutomationEventListener(session_factory, clock=clock)


class TestMatching:
    """Normal rule matching."""

    @pytest.mark.asyncio
    async def test_quote_signed_end_to_end(self, listener, make_rule, session_factory):
        """A signed quote with a deposit queues one immediate SMS."""
        await make_rule(
            {"type": "quote-signed"},
            conditions=[{"field": "depositAmount", "operator": "greater-than", "value": 0}],
            actions=[{"type": "send-sms", "config": {"delay": {"amount": 0}}}],
        )

        report = await listener.handle_event(_event("quote-signed", quoteId="Q1", depositAmount=500))

        assert report.queued == 1
        entries = await _entries(session_factory)
        assert len(entries) == 1
        assert entries[0].status == "pending"
        assert entries[0].action_type == "send-sms"
        assert entries[0].scheduled_for is None
        assert entries[0].trigger["data"]["depositAmount"] == 500

    @pytest.mark.asyncio
    async def test_separator_spelling(self, listener, make_rule, session_factory):
        """quote:signed matches a quote-signed rule."""
        await make_rule({"type": "quote-signed"})
        report = await listener.handle_event(_event("quote:signed", quoteId="Q1"))
        assert report.queued == 1

    @pytest.mark.asyncio
    async def test_identical_events_queue_once(self, listener, make_rule, session_factory, clock):
        """The same event twice inside the window yields one entry."""
        await make_rule({"type": "quote-signed"})

        await listener.handle_event(_event("quote-signed", projectId="P1", contactId="C1"))
        clock.advance(seconds=20)
        report = await listener.handle_event(_event("quote-signed", projectId="P1", contactId="C1"))

        assert report.queued == 0
        assert report.rules[0].duplicates == 1
        assert len(await _entries(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_conditions_not_met(self, listener, make_rule, session_factory):
        """Failing conditions queue nothing and leave stats alone."""
        rule = await make_rule(
            {"type": "quote-signed"},
            conditions=[{"field": "depositAmount", "operator": "greater-than", "value": 0}],
        )

        report = await listener.handle_event(_event("quote-signed", quoteId="Q1"))

        assert report.rules[0].conditions_met is False
        assert await _entries(session_factory) == []
        assert (await _rule(session_factory, rule.rule_id)).execution_count == 0

    @pytest.mark.asyncio
    async def test_priority_order(self, listener, make_rule):
        """Higher priority rules are evaluated first."""
        low = await make_rule({"type": "contact-created"}, name="low", priority=1)
        high = await make_rule({"type": "contact-created"}, name="high", priority=10)

        report = await listener.handle_event(_event("contact-created", contactId="C1"))
        assert [r.rule_id for r in report.rules] == [high.rule_id, low.rule_id]

    @pytest.mark.asyncio
    async def test_other_tenant_and_inactive_rules_ignored(self, listener, make_rule):
        """Only the tenant's active rules match."""
        await make_rule({"type": "contact-created"}, tenant_id="T2")
        await make_rule({"type": "contact-created"}, is_active=False)

        report = await listener.handle_event(_event("contact-created", contactId="C1"))
        assert report.rules == []

    @pytest.mark.asyncio
    async def test_empty_actions_still_meet_conditions(self, listener, make_rule, session_factory):
        """A rule without actions reports conditions met and queues nothing."""
        await make_rule({"type": "contact-created"}, actions=[])
        report = await listener.handle_event(_event("contact-created", contactId="C1"))
        assert report.rules[0].conditions_met is True
        assert report.queued == 0

    @pytest.mark.asyncio
    async def test_broken_rule_is_isolated(self, listener, make_rule, session_factory):
        """A rule with a bad operator fails alone and counts a failure."""
        broken = await make_rule({"type": "contact-created"}, priority=10)
        healthy = await make_rule({"type": "contact-created"})
        async with session_factory() as session:
            await session.execute(
                update(AutomationRule)
                .where(AutomationRule.rule_id == broken.rule_id)
                .values(conditions=[{"field": "x", "operator": "matches", "value": 1}])
            )
            await session.commit()

        report = await listener.handle_event(_event("contact-created", contactId="C1"))

        outcomes = {r.rule_id: r for r in report.rules}
        assert outcomes[broken.rule_id].error
        assert outcomes[healthy.rule_id].queued == 1
        assert (await _rule(session_factory, broken.rule_id)).failure_count == 1

    @pytest.mark.asyncio
    async def test_execution_stats(self, listener, make_rule, session_factory, clock):
        """A successful run bumps execution and success counters."""
        rule = await make_rule({"type": "contact-created"})
        await listener.handle_event(_event("contact-created", contactId="C1"))

        stored = await _rule(session_factory, rule.rule_id)
        assert stored.execution_count == 1
        assert stored.success_count == 1
        assert stored.last_executed == clock.now

    @pytest.mark.asyncio
    async def test_delayed_action(self, listener, make_rule, session_factory, clock):
        """An action delay produces a scheduled entry."""
        await make_rule(
            {"type": "contact-created"},
            actions=[{"type": "send-email", "config": {"delay": {"amount": 2, "unit": "hours"}}}],
        )
        await listener.handle_event(_event("contact-created", contactId="C1"))

        [entry] = await _entries(session_factory)
        assert entry.status == "scheduled"
        assert entry.scheduled_for == clock.now + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_attached_to_bus(self, listener, make_rule):
        """The listener answers every published event."""
        await make_rule({"type": "contact-created"})
        bus = EventBus()
        listener.attach(bus)

        [report] = await bus.emit_contact_created(TENANT, {"id": "C1"})
        assert report.queued == 1

    @pytest.mark.asyncio
    async def test_delivery_guard(self, listener, make_rule, session_factory, clock):
        """A repeated project-created delivery within a minute is dropped."""
        await make_rule({"type": "project-created"}, actions=[
            {"type": "send-sms", "config": {}},
            {"type": "add-tag", "config": {"tag": "new"}},
        ])
        await listener.handle_event(_event("project-created", projectId="P1"))
        clock.advance(seconds=30)
        report = await listener.handle_event(_event("project-created", projectId="P1"))

        assert report.rules[0].duplicates == 2
        assert len(await _entries(session_factory)) == 2


class TestTriggerSnapshot:
    """Stored trigger documents."""

    def test_deposit_aliases_folded(self):
        """The snapshot data always carries the deposit aliases."""
        snapshot = trigger_snapshot("quote-signed", TENANT, {"quoteDepositAmount": 40})
        assert snapshot == {
            "type": "quote-signed",
            "tenantId": TENANT,
            "data": {"quoteDepositAmount": 40, "depositAmount": 40, "depositRequired": False},
        }


class TestStageDelays:
    """stage-delay scheduling and cancellation."""

    @pytest.mark.asyncio
    async def test_schedule_and_cancel(self, listener, make_rule, session_factory, clock):
        """Entering a stage schedules its delayed rule; leaving it cancels."""
        await make_rule({"type": "stage-delay", "stageId": "S2", "config": {"delayAmount": 2, "delayUnit": "days"}})

        await listener.handle_event(_event(
            "project-stage-changed", projectId="P1", fromStageId="S1", toStageId="S2", stageId="S2",
        ))
        [entry] = await _entries(session_factory)
        assert entry.status == "scheduled"
        assert entry.trigger_type == "stage-delay"
        assert entry.stage_id == "S2"
        assert entry.scheduled_for == clock.now + timedelta(days=2)

        clock.advance(hours=1)
        report = await listener.handle_event(_event(
            "project-stage-changed", projectId="P1", fromStageId="S2", toStageId="S3", stageId="S3",
        ))
        assert report.cancelled == 1
        assert await _entries(session_factory) == []

    @pytest.mark.asyncio
    async def test_stage_exited(self, listener, make_rule, session_factory):
        """stage-exited only cancels."""
        await make_rule({"type": "stage-delay", "stageId": "S2", "config": {"delayAmount": 1}})
        await listener.handle_event(_event("project-stage-changed", projectId="P1", toStageId="S2"))

        report = await listener.handle_event(_event("stage-exited", projectId="P1", fromStageId="S2"))
        assert report.cancelled == 1
        assert report.rules == []

    @pytest.mark.asyncio
    async def test_stage_entered_rule(self, listener, make_rule):
        """stage-entered rules match the stage the project moved to."""
        await make_rule({"type": "stage-entered", "stageId": "S2"})
        await make_rule({"type": "stage-entered", "stageId": "S9"})

        report = await listener.handle_event(_event("project-stage-changed", projectId="P1", toStageId="S2"))
        assert report.queued == 1

    @pytest.mark.asyncio
    async def test_invalid_delay_is_isolated(self, listener, make_rule, session_factory):
        """A stage-delay rule with a non-numeric delay fails alone."""
        broken = await make_rule({"type": "stage-delay", "stageId": "S2", "config": {"delayAmount": "two"}})
        await make_rule({"type": "stage-entered", "stageId": "S2"})

        report = await listener.handle_event(_event("project-stage-changed", projectId="P1", toStageId="S2"))

        outcomes = {r.rule_id: r for r in report.rules}
        assert outcomes[broken.rule_id].error
        assert report.queued == 1
        [entry] = await _entries(session_factory)
        assert entry.status == "pending"


class TestAppointmentReminders:
    """Time-based rules relative to appointment start."""

    @pytest.mark.asyncio
    async def test_reminder_before_start(self, listener, make_rule, session_factory, clock):
        """A 1 hour reminder is scheduled an hour before the start."""
        await make_rule({"type": "time-based", "timing": "before", "amount": 1, "unit": "hours"})
        start = clock.now + timedelta(days=1)

        await listener.handle_event(_event(
            "appointment-scheduled", appointmentId="A1", start=start.isoformat() + "Z",
        ))

        [entry] = await _entries(session_factory)
        assert entry.status == "scheduled"
        assert entry.trigger_type == "time-based-trigger"
        assert entry.appointment_id == "A1"
        assert entry.scheduled_for == start - timedelta(hours=1)
        assert entry.meta["triggerType"] == "reminder"

    @pytest.mark.asyncio
    async def test_follow_up_after_start(self, listener, make_rule, session_factory, clock):
        """after counts forward from the start."""
        await make_rule({"type": "time-based", "timing": "after", "amount": 30, "unit": "minutes"})
        start = clock.now + timedelta(hours=2)

        await listener.handle_event(_event("appointment-scheduled", appointmentId="A1", start=start.isoformat()))

        [entry] = await _entries(session_factory)
        assert entry.scheduled_for == start + timedelta(minutes=30)
        assert entry.meta["triggerType"] == "follow-up"

    @pytest.mark.asyncio
    async def test_past_reminder_discarded(self, listener, make_rule, session_factory, clock):
        """A reminder time already past is not queued."""
        await make_rule({"type": "time-based", "timing": "before", "amount": 1, "unit": "hours"})
        start = clock.now + timedelta(minutes=30)

        report = await listener.handle_event(_event("appointment-scheduled", appointmentId="A1", start=start.isoformat()))

        assert report.rules[0].discarded == 1
        assert await _entries(session_factory) == []

    @pytest.mark.asyncio
    async def test_calendar_filter(self, listener, make_rule, session_factory, clock):
        """Rules bound to another calendar do not schedule."""
        await make_rule({"type": "time-based", "calendarId": "CAL1", "timing": "before", "amount": 1})
        start = clock.now + timedelta(days=1)

        await listener.handle_event(_event(
            "appointment-scheduled", appointmentId="A1", calendarId="CAL2", start=start.isoformat(),
        ))
        assert await _entries(session_factory) == []

    @pytest.mark.asyncio
    async def test_cancel_removes_reminders(self, listener, make_rule, session_factory, clock):
        """Cancelling an appointment deletes its scheduled reminders."""
        await make_rule({"type": "time-based", "timing": "before", "amount": 1, "unit": "hours"})
        start = clock.now + timedelta(days=1)
        await listener.handle_event(_event("appointment-scheduled", appointmentId="A1", start=start.isoformat()))

        report = await listener.handle_event(_event("appointment-cancelled", appointmentId="A1"))
        assert report.cancelled == 1
        assert await _entries(session_factory) == []

    @pytest.mark.asyncio
    async def test_cancel_keeps_finished_entries(self, listener, make_rule, session_factory, clock):
        """Only still-scheduled entries of the appointment are deleted."""
        await make_rule({"type": "time-based", "timing": "before", "amount": 1, "unit": "hours"})
        start = clock.now + timedelta(days=1)
        await listener.handle_event(_event("appointment-scheduled", appointmentId="A1", start=start.isoformat()))
        async with session_factory() as session:
            sent = await queue_crud.create_entry(
                session,
                tenant_id=TENANT,
                rule_id="R0",
                action={"type": "send-sms", "config": {}},
                trigger={"type": "appointment-scheduled", "tenantId": TENANT, "data": {"appointmentId": "A1"}},
                status="completed",
                metadata={"appointmentId": "A1"},
                created_at=clock.now,
            )

        report = await listener.handle_event(_event("appointment-cancelled", appointmentId="A1"))

        assert report.cancelled == 1
        [remaining] = await _entries(session_factory)
        assert remaining.entry_id == sent.entry_id
        assert remaining.status == "completed"

    @pytest.mark.asyncio
    async def test_invalid_offset_is_isolated(self, listener, make_rule, session_factory, clock):
        """A time-based rule with a non-numeric offset does not stop the others."""
        broken = await make_rule({"type": "time-based", "config": {"delayHours": "soon"}})
        await make_rule({"type": "time-based", "timing": "before", "amount": 1, "unit": "hours"})
        start = clock.now + timedelta(days=1)

        report = await listener.handle_event(_event("appointment-scheduled", appointmentId="A1", start=start.isoformat()))

        outcomes = {r.rule_id: r for r in report.rules}
        assert outcomes[broken.rule_id].error
        [entry] = await _entries(session_factory)
        assert entry.scheduled_for == start - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_reschedule_moves_reminder(self, listener, make_rule, session_factory, clock):
        """Rescheduling replaces the reminder with one for the new start."""
        await make_rule({"type": "time-based", "timing": "before", "amount": 1, "unit": "hours"})
        first = clock.now + timedelta(days=1)
        second = clock.now + timedelta(days=2)
        await listener.handle_event(_event("appointment-scheduled", appointmentId="A1", start=first.isoformat()))

        report = await listener.handle_event(_event("appointment-rescheduled", appointmentId="A1", start=second.isoformat()))

        assert report.cancelled == 1
        [entry] = await _entries(session_factory)
        assert entry.scheduled_for == second - timedelta(hours=1)
