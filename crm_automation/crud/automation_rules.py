# crud/automation_rules.py
from typing import List, Optional
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import update, and_, or_

from crm_automation.core.clock import utcnow
from crm_automation.models.automation_rule import AutomationRule, new_id
from crm_automation.schemas.automation import RuleCreateRequest

# Appointment triggers that all mean "an appointment now exists on the calendar"
APPOINTMENT_START_TYPES = ("appointment-scheduled", "appointment-created", "appointment-started")


# Create a new automation rule
async def create_rule(db: AsyncSession, request: RuleCreateRequest) -> AutomationRule:
    trigger = request.trigger.model_dump(by_alias=True, exclude_none=True)
    rule = AutomationRule(
        rule_id=new_id(),
        tenant_id=request.tenant_id,
        name=request.name,
        is_active=request.is_active,
        priority=request.priority,
        trigger=trigger,
        trigger_type=request.trigger.type,
        stage_id=request.trigger.stage_id,
        pipeline_id=request.trigger.pipeline_id,
        calendar_id=request.trigger.calendar_id,
        conditions=[c.model_dump() for c in request.conditions],
        actions=[a.model_dump() for a in request.actions],
        created_at=utcnow(),
    )
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return rule


# Get a rule by ID
async def get_rule(db: AsyncSession, rule_id: str) -> Optional[AutomationRule]:
    result = await db.execute(
        select(AutomationRule).where(AutomationRule.rule_id == rule_id)
    )
    return result.scalar_one_or_none()


# List all rules of a tenant (active + inactive)
async def get_rules_by_tenant(db: AsyncSession, tenant_id: str) -> List[AutomationRule]:
    result = await db.execute(
        select(AutomationRule)
        .where(AutomationRule.tenant_id == tenant_id)
        .order_by(AutomationRule.priority.desc(), AutomationRule.created_at)
    )
    return result.scalars().all()


# Active rules of one trigger type, optionally narrowed by stage / calendar
async def get_active_rules_by_trigger(
    db: AsyncSession,
    tenant_id: str,
    trigger_type: str,
    stage_id: Optional[str] = None,
    calendar_id: Optional[str] = None,
) -> List[AutomationRule]:
    filters = [
        AutomationRule.tenant_id == tenant_id,
        AutomationRule.is_active == True,
        AutomationRule.trigger_type == trigger_type,
    ]
    if stage_id is not None:
        filters.append(AutomationRule.stage_id == stage_id)
    if calendar_id is not None:
        filters.append(
            or_(AutomationRule.calendar_id.is_(None), AutomationRule.calendar_id == calendar_id)
        )

    result = await db.execute(
        select(AutomationRule)
        .where(and_(*filters))
        .order_by(AutomationRule.priority.desc(), AutomationRule.created_at)
    )
    return result.scalars().all()


# Candidate rules for an incoming event
async def find_matching_rules(
    db: AsyncSession,
    tenant_id: str,
    event_type: str,
    normalized_type: str,
    stage_id: Optional[str] = None,
    pipeline_id: Optional[str] = None,
    calendar_id: Optional[str] = None,
    rule_id: Optional[str] = None,
) -> List[AutomationRule]:
    """
    Active rules of the tenant where any of:
    - trigger type equals the event type (original or normalized form)
    - `stage-entered` trigger whose stage (and pipeline, if set) match the event
    - appointment start trigger with no calendar filter or the event's calendar
    - the event names the rule explicitly
    Ordered by priority, highest first.
    """
    matchers = [AutomationRule.trigger_type.in_([event_type, normalized_type])]

    if stage_id:
        stage_match = [
            AutomationRule.trigger_type == "stage-entered",
            AutomationRule.stage_id == stage_id,
        ]
        if pipeline_id:
            stage_match.append(
                or_(AutomationRule.pipeline_id.is_(None), AutomationRule.pipeline_id == pipeline_id)
            )
        matchers.append(and_(*stage_match))

    if normalized_type in APPOINTMENT_START_TYPES:
        appointment_match = [AutomationRule.trigger_type.in_(APPOINTMENT_START_TYPES)]
        if calendar_id:
            appointment_match.append(
                or_(AutomationRule.calendar_id.is_(None), AutomationRule.calendar_id == calendar_id)
            )
        matchers.append(and_(*appointment_match))

    if rule_id:
        matchers.append(AutomationRule.rule_id == rule_id)

    result = await db.execute(
        select(AutomationRule)
        .where(
            AutomationRule.tenant_id == tenant_id,
            AutomationRule.is_active == True,
            or_(*matchers),
        )
        .order_by(AutomationRule.priority.desc(), AutomationRule.created_at)
    )
    return result.scalars().all()


# Bump execution statistics after a rule ran
async def record_execution(
    db: AsyncSession,
    rule_id: str,
    success: bool,
    executed_at: Optional[datetime] = None,
) -> None:
    values = {
        "execution_count": AutomationRule.execution_count + 1,
        "last_executed": executed_at or utcnow(),
    }
    if success:
        values["success_count"] = AutomationRule.success_count + 1
    else:
        values["failure_count"] = AutomationRule.failure_count + 1

    await db.execute(
        update(AutomationRule)
        .where(AutomationRule.rule_id == rule_id)
        .values(**values)
    )
    await db.commit()
