from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
import logging
import traceback

from crm_automation.crud import automation_rules as rule_crud
from crm_automation.db.session import get_db
from crm_automation.schemas.automation import (
    CleanupReport, DomainEvent, MatchReport, QueueStats, RuleCreateRequest, RuleResponse,
)
from crm_automation.services.automation_system import AutomationSystem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/automations", tags=["Automations"])


def get_automation_system(request: Request) -> AutomationSystem:
    """The engine built by the app lifespan."""
    return request.app.state.automation


@router.post(
    "/events",
    response_model=MatchReport,
    summary="Publish a domain event",
    description="Matches the event against the tenant's active rules and queues the resulting actions.",
)
async def publish_event(
    event: DomainEvent,
    system: AutomationSystem = Depends(get_automation_system),
):
    try:
        report = await system.ingest(event)
        if report is None:
            raise LookupError("No automation listener handled the event")
        return report
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error("Error in publish_event: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post(
    "/rules",
    response_model=RuleResponse,
    status_code=201,
    summary="Create an automation rule",
)
async def create_rule(
    request: RuleCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await rule_crud.create_rule(db, request)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Error in create_rule: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get(
    "/rules",
    response_model=List[RuleResponse],
    summary="List a tenant's automation rules",
)
async def list_rules(
    tenant_id: str = Query(..., description="Tenant whose rules to list"),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await rule_crud.get_rules_by_tenant(db, tenant_id)
    except Exception as e:
        logger.error("Error in list_rules: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get(
    "/rules/{rule_id}",
    response_model=RuleResponse,
    summary="Get one automation rule",
)
async def get_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        rule = await rule_crud.get_rule(db, rule_id)
        if rule is None:
            raise LookupError(f"Rule {rule_id} not found")
        return rule
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error("Error in get_rule: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get(
    "/queue/stats",
    response_model=QueueStats,
    summary="Queue statistics",
    description="Entry counts by status, total, and whether the processor is running.",
)
async def queue_stats(system: AutomationSystem = Depends(get_automation_system)):
    try:
        return await system.get_stats()
    except Exception as e:
        logger.error("Error in queue_stats: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post(
    "/queue/cleanup",
    response_model=CleanupReport,
    summary="Delete old queue entries",
    description="Removes completed entries past retention and every entry past the queue retention window.",
)
async def queue_cleanup(system: AutomationSystem = Depends(get_automation_system)):
    try:
        return await system.cleanup()
    except Exception as e:
        logger.error("Error in queue_cleanup: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")
