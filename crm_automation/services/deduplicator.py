from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
import math

from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.core import config
from crm_automation.crud import automation_queue as queue_crud

logger = logging.getLogger(__name__)

# Interrupt-style actions get the short window
SHORT_WINDOW_ACTIONS = {"push-notification"}
SHORT_WINDOW = timedelta(seconds=30)
DEFAULT_WINDOW = timedelta(minutes=10)

# Event types that are often delivered twice by upstream webhooks
DELIVERY_GUARD_WINDOWS = {
    "appointment-scheduled": timedelta(minutes=5),
    "appointment-completed": timedelta(minutes=5),
    "project-created": timedelta(minutes=1),
    "contact-assigned": timedelta(seconds=10),
}


def _sha256(payload: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()


def time_bucket(now: datetime, bucket_seconds: int = config.DEDUP_BUCKET_SECONDS) -> int:
    epoch_seconds = now.replace(tzinfo=timezone.utc).timestamp() if now.tzinfo is None else now.timestamp()
    return int(epoch_seconds // bucket_seconds)


def dedup_window(action_type: str) -> timedelta:
    return SHORT_WINDOW if action_type in SHORT_WINDOW_ACTIONS else DEFAULT_WINDOW


def trigger_hash(rule_id: str, event_type: str, tenant_id: str, data: Dict[str, Any]) -> str:
    """Identifies one (event, rule, entities) pairing; no time component."""
    return _sha256({
        "ruleId": rule_id,
        "triggerType": event_type,
        "projectId": data.get("projectId"),
        "contactId": data.get("contactId"),
        "appointmentId": data.get("appointmentId"),
        "tenantId": tenant_id,
    })


def action_hash(trigger_hash_value: str, action_type: str, data: Dict[str, Any], bucket: int) -> str:
    return _sha256({
        "triggerHash": trigger_hash_value,
        "actionType": action_type,
        "projectId": data.get("projectId"),
        "contactId": data.get("contactId"),
        "timeWindow": bucket,
    })


class Deduplicator:
    """
    Suppresses repeated queue writes.

    - Action dedup: an active entry with the same action hash created inside the
      action's window. Hashes of every bucket overlapping the window are checked,
      so two events on either side of a bucket boundary still collapse.
    - Delivery guard: for event types in DELIVERY_GUARD_WINDOWS, any entry for the
      same trigger hash inside the window. Redis answers first when available.
    """

    def __init__(self, redis=None, bucket_seconds: int = config.DEDUP_BUCKET_SECONDS):
        self.redis = redis
        self.bucket_seconds = bucket_seconds

    def action_hashes(
        self,
        trigger_hash_value: str,
        action_type: str,
        data: Dict[str, Any],
        now: datetime,
    ) -> List[str]:
        """Current bucket's hash first, then the earlier buckets the window reaches into."""
        window = dedup_window(action_type)
        current = time_bucket(now, self.bucket_seconds)
        span = math.ceil(window.total_seconds() / self.bucket_seconds)
        return [
            action_hash(trigger_hash_value, action_type, data, bucket)
            for bucket in range(current, current - span - 1, -1)
        ]

    async def is_duplicate_action(
        self,
        db: AsyncSession,
        trigger_hash_value: str,
        action_type: str,
        data: Dict[str, Any],
        now: datetime,
    ) -> Tuple[bool, str]:
        """Returns (duplicate?, hash to store on a new entry)."""
        hashes = self.action_hashes(trigger_hash_value, action_type, data, now)
        existing = await queue_crud.find_active_by_action_hashes(
            db, hashes, since=now - dedup_window(action_type)
        )
        if existing:
            logger.warning("Duplicate %s action suppressed (existing entry %s)", action_type, existing)
        return existing is not None, hashes[0]

    @staticmethod
    def _delivery_key(trigger_hash_value: str) -> str:
        return f"automation:delivery:{trigger_hash_value}"

    async def is_duplicate_delivery(
        self,
        db: AsyncSession,
        trigger_hash_value: str,
        event_type: str,
        now: datetime,
    ) -> bool:
        window = DELIVERY_GUARD_WINDOWS.get(event_type)
        if window is None:
            return False

        # 1. --- Check Redis ---
        if self.redis is not None:
            try:
                if await self.redis.get(self._delivery_key(trigger_hash_value)):
                    logger.warning("Duplicate %s delivery suppressed (cache)", event_type)
                    return True
            except Exception as e:
                logger.warning("Redis delivery check failed, falling back to DB: %s", e)

        # 2. --- Check DB ---
        existing = await queue_crud.find_recent_by_trigger_hash(db, trigger_hash_value, since=now - window)
        if existing:
            logger.warning("Duplicate %s delivery suppressed (DB, entry %s)", event_type, existing)
            return True
        return False

    async def remember_delivery(
        self,
        trigger_hash_value: str,
        event_type: str,
        entry_id: Optional[str] = None,
    ) -> None:
        window = DELIVERY_GUARD_WINDOWS.get(event_type)
        if window is None or self.redis is None:
            return
        try:
            await self.redis.set(
                self._delivery_key(trigger_hash_value),
                json.dumps({"entry_id": entry_id, "event_type": event_type}),
                ex=int(window.total_seconds()),
            )
        except Exception as e:
            logger.warning("Failed to cache delivery %s: %s", trigger_hash_value, e)
