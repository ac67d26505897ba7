# crud/automation_queue.py
from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import update, delete, and_, or_, func

from crm_automation.core.clock import utcnow
from crm_automation.models.automation_queue import AutomationQueueEntry, ACTIVE_STATUSES
from crm_automation.models.automation_rule import new_id


# Create a new queue entry
async def create_entry(
    db: AsyncSession,
    tenant_id: str,
    rule_id: Optional[str],
    action: Dict[str, Any],
    trigger: Dict[str, Any],
    status: str = "pending",
    scheduled_for: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
) -> AutomationQueueEntry:
    metadata = metadata or {}
    entry = AutomationQueueEntry(
        entry_id=new_id(),
        rule_id=rule_id,
        tenant_id=tenant_id,
        action=action,
        action_type=action.get("type"),
        trigger=trigger,
        trigger_type=trigger.get("type"),
        status=status,
        scheduled_for=scheduled_for,
        attempts=0,
        meta=metadata,
        trigger_hash=metadata.get("triggerHash"),
        action_hash=metadata.get("actionHash"),
        appointment_id=metadata.get("appointmentId"),
        project_id=metadata.get("projectId"),
        stage_id=metadata.get("stageId"),
        created_at=created_at or utcnow(),
    )
    db.add(entry)
    await db.commit()
    await db.refresh(entry)
    return entry


# Get entry by ID
async def get_entry(db: AsyncSession, entry_id: str) -> Optional[AutomationQueueEntry]:
    result = await db.execute(
        select(AutomationQueueEntry).where(AutomationQueueEntry.entry_id == entry_id)
    )
    return result.scalar_one_or_none()


# List entries, newest first
async def list_entries(
    db: AsyncSession,
    status: Optional[str] = None,
    tenant_id: Optional[str] = None,
    limit: int = 50,
) -> List[AutomationQueueEntry]:
    stmt = select(AutomationQueueEntry)
    if status:
        stmt = stmt.where(AutomationQueueEntry.status == status)
    if tenant_id:
        stmt = stmt.where(AutomationQueueEntry.tenant_id == tenant_id)
    result = await db.execute(stmt.order_by(AutomationQueueEntry.created_at.desc()).limit(limit))
    return result.scalars().all()


# Active entry carrying one of the action hashes, created since `since`
async def find_active_by_action_hashes(
    db: AsyncSession,
    action_hashes: Iterable[str],
    since: datetime,
) -> Optional[str]:
    result = await db.execute(
        select(AutomationQueueEntry.entry_id)
        .where(
            AutomationQueueEntry.action_hash.in_(list(action_hashes)),
            AutomationQueueEntry.status.in_(ACTIVE_STATUSES),
            AutomationQueueEntry.created_at >= since,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


# Any entry produced by the same (event, rule) pairing since `since`
async def find_recent_by_trigger_hash(
    db: AsyncSession,
    trigger_hash: str,
    since: datetime,
) -> Optional[str]:
    result = await db.execute(
        select(AutomationQueueEntry.entry_id)
        .where(
            AutomationQueueEntry.trigger_hash == trigger_hash,
            AutomationQueueEntry.created_at >= since,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


# Entries ready to run
async def select_due_entries(
    db: AsyncSession,
    now: datetime,
    limit: int = 10,
    max_attempts: int = 3,
    lookback: timedelta = timedelta(hours=24),
) -> List[AutomationQueueEntry]:
    """
    Pending entries whose due time (scheduled_for, or created_at for immediate
    entries) lies within the lookback window, plus scheduled entries that
    are due. Entries that reached the attempt ceiling are never selected.
    """
    due_at = func.coalesce(AutomationQueueEntry.scheduled_for, AutomationQueueEntry.created_at)
    stmt = (
        select(AutomationQueueEntry)
        .where(
            AutomationQueueEntry.attempts < max_attempts,
            or_(
                and_(
                    AutomationQueueEntry.status == "pending",
                    due_at <= now,
                    due_at >= now - lookback,
                ),
                and_(
                    AutomationQueueEntry.status == "scheduled",
                    AutomationQueueEntry.scheduled_for <= now,
                ),
            ),
        )
        .order_by(due_at)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return result.scalars().all()


# Move due scheduled entries to pending in one write
async def promote_scheduled(db: AsyncSession, entry_ids: List[str], now: datetime) -> int:
    if not entry_ids:
        return 0
    result = await db.execute(
        update(AutomationQueueEntry)
        .where(
            AutomationQueueEntry.entry_id.in_(entry_ids),
            AutomationQueueEntry.status == "scheduled",
        )
        .values(status="pending", updated_at=now)
    )
    await db.commit()
    return result.rowcount


# Claim a pending entry; returns the new attempt count, or None if someone else got it
async def claim_entry(db: AsyncSession, entry_id: str, now: datetime) -> Optional[int]:
    result = await db.execute(
        update(AutomationQueueEntry)
        .where(
            AutomationQueueEntry.entry_id == entry_id,
            AutomationQueueEntry.status == "pending",
        )
        .values(
            status="processing",
            attempts=AutomationQueueEntry.attempts + 1,
            processing_started_at=now,
            updated_at=now,
        )
    )
    await db.commit()
    if result.rowcount != 1:
        return None

    attempts = await db.execute(
        select(AutomationQueueEntry.attempts).where(AutomationQueueEntry.entry_id == entry_id)
    )
    return attempts.scalar_one()


# Mark a processing entry as completed
async def complete_entry(
    db: AsyncSession,
    entry_id: str,
    now: datetime,
    result: Any = None,
) -> bool:
    outcome = await db.execute(
        update(AutomationQueueEntry)
        .where(
            AutomationQueueEntry.entry_id == entry_id,
            AutomationQueueEntry.status == "processing",
        )
        .values(status="completed", completed_at=now, updated_at=now, result=result)
    )
    await db.commit()
    return outcome.rowcount > 0


# Put a failed processing entry back to pending, or fail it at the ceiling
async def release_entry(
    db: AsyncSession,
    entry_id: str,
    error: str,
    attempts: int,
    max_attempts: int,
    now: datetime,
) -> str:
    status = "failed" if attempts >= max_attempts else "pending"
    await db.execute(
        update(AutomationQueueEntry)
        .where(
            AutomationQueueEntry.entry_id == entry_id,
            AutomationQueueEntry.status == "processing",
        )
        .values(
            status=status,
            last_error=error,
            completed_at=now if status == "failed" else None,
            updated_at=now,
        )
    )
    await db.commit()
    return status


# Fail a processing entry regardless of attempts left
async def fail_entry(db: AsyncSession, entry_id: str, error: str, now: datetime) -> bool:
    outcome = await db.execute(
        update(AutomationQueueEntry)
        .where(
            AutomationQueueEntry.entry_id == entry_id,
            AutomationQueueEntry.status == "processing",
        )
        .values(status="failed", last_error=error, completed_at=now, updated_at=now)
    )
    await db.commit()
    return outcome.rowcount > 0


# Cancellation: scheduled entries tagged with an appointment
async def delete_scheduled_for_appointment(db: AsyncSession, appointment_id: str) -> int:
    result = await db.execute(
        delete(AutomationQueueEntry).where(
            AutomationQueueEntry.appointment_id == appointment_id,
            AutomationQueueEntry.status == "scheduled",
        )
    )
    await db.commit()
    return result.rowcount


# Cancellation: scheduled stage-delay entries of a project (optionally one stage)
async def delete_scheduled_stage_delays(
    db: AsyncSession,
    project_id: str,
    stage_id: Optional[str] = None,
) -> int:
    filters = [
        AutomationQueueEntry.project_id == project_id,
        AutomationQueueEntry.trigger_type == "stage-delay",
        AutomationQueueEntry.status == "scheduled",
    ]
    if stage_id:
        filters.append(AutomationQueueEntry.stage_id == stage_id)

    result = await db.execute(delete(AutomationQueueEntry).where(*filters))
    await db.commit()
    return result.rowcount


# Counts by status
async def get_stats(db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(AutomationQueueEntry.status, func.count(AutomationQueueEntry.entry_id))
        .group_by(AutomationQueueEntry.status)
    )
    by_status = {status: count for status, count in result.all()}
    return {"total": sum(by_status.values()), "by_status": by_status}


# Retention cleanup
async def cleanup_entries(
    db: AsyncSession,
    now: Optional[datetime] = None,
    completed_retention_days: int = 7,
    retention_days: int = 30,
) -> Dict[str, Any]:
    """
    1. Delete completed entries finished more than `completed_retention_days` ago.
    2. Delete every entry created more than `retention_days` ago.
    3. Report failures of the last 24 hours grouped by error.
    """
    now = now or utcnow()

    deleted_completed = await db.execute(
        delete(AutomationQueueEntry).where(
            AutomationQueueEntry.status == "completed",
            AutomationQueueEntry.completed_at < now - timedelta(days=completed_retention_days),
        )
    )
    deleted_old = await db.execute(
        delete(AutomationQueueEntry).where(
            AutomationQueueEntry.created_at < now - timedelta(days=retention_days)
        )
    )
    await db.commit()

    failures = await db.execute(
        select(AutomationQueueEntry.last_error, func.count(AutomationQueueEntry.entry_id))
        .where(
            AutomationQueueEntry.status == "failed",
            AutomationQueueEntry.created_at >= now - timedelta(hours=24),
        )
        .group_by(AutomationQueueEntry.last_error)
    )
    failures_by_error = {(error or "Unknown error"): count for error, count in failures.all()}

    return {
        "deleted_completed": deleted_completed.rowcount,
        "deleted_old": deleted_old.rowcount,
        "recent_failures": sum(failures_by_error.values()),
        "failures_by_error": failures_by_error,
    }
