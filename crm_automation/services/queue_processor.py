from typing import Any, Callable, Dict, Optional
from datetime import datetime, timedelta
import asyncio
import logging

from fastapi.encoders import jsonable_encoder

from crm_automation.core import config
from crm_automation.core.clock import utcnow
from crm_automation.crud import automation_queue as queue_crud
from crm_automation.errors import ActionConfigurationError, ConditionConfigurationError
from crm_automation.models.automation_queue import AutomationQueueEntry

logger = logging.getLogger(__name__)

# Errors that a retry cannot fix
CONFIGURATION_ERRORS = (ActionConfigurationError, ConditionConfigurationError)


class AutomationQueueProcessor:
    """
    Polling worker that drives queue entries to completion.

    Each pass selects a bounded batch of due entries, promotes the scheduled
    ones to `pending` in one write, then processes the batch one entry at a
    time. A pass starts only after the previous one finished.

    Status transitions are conditional writes keyed on id and status, so an
    entry claimed elsewhere is skipped rather than run twice.
    """

    def __init__(
        self,
        session_factory,
        dispatcher,
        interval_seconds: float = config.POLL_INTERVAL_SECONDS,
        batch_size: int = config.BATCH_SIZE,
        max_attempts: int = config.MAX_ATTEMPTS,
        lookback: timedelta = timedelta(hours=config.PENDING_LOOKBACK_HOURS),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.lookback = lookback
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.info("Queue processor already running")
            return
        logger.info("Starting queue processor with %ss interval", self.interval_seconds)
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            self._stop_event = None
        logger.info("Queue processor stopped")

    async def _run(self, stop_event: asyncio.Event) -> None:
        # first pass runs immediately
        while not stop_event.is_set():
            try:
                await self.process_queue()
            except Exception:
                logger.exception("Error processing automation queue")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def process_queue(self) -> int:
        """One pass. Returns the number of entries processed."""
        now = self.clock()
        async with self.session_factory() as db:
            entries = await queue_crud.select_due_entries(
                db, now,
                limit=self.batch_size,
                max_attempts=self.max_attempts,
                lookback=self.lookback,
            )
            if not entries:
                return 0

            scheduled_ids = [e.entry_id for e in entries if e.status == "scheduled"]
            if scheduled_ids:
                await queue_crud.promote_scheduled(db, scheduled_ids, now)

            # entries are handed to the dispatcher outside this session
            for entry in entries:
                db.expunge(entry)

        logger.info("Processing %s automation queue entries", len(entries))
        for entry in entries:
            await self.process_entry(entry)
        return len(entries)

    async def process_entry(self, entry: AutomationQueueEntry) -> Optional[str]:
        """
        Claim, dispatch and resolve one entry.

        Returns the entry's new status, or None if it was claimed elsewhere.
        """
        entry_id = entry.entry_id
        async with self.session_factory() as db:
            attempts = await queue_crud.claim_entry(db, entry_id, self.clock())
        if attempts is None:
            logger.info("Queue entry %s already claimed, skipping", entry_id)
            return None

        try:
            result = await self.dispatcher.dispatch(entry)
        except CONFIGURATION_ERRORS as e:
            logger.error("Queue entry %s misconfigured (%s): %s", entry_id, entry.action_type, e)
            async with self.session_factory() as db:
                await queue_crud.fail_entry(db, entry_id, str(e), self.clock())
            return "failed"
        except Exception as e:
            logger.exception("Queue entry %s failed on attempt %s", entry_id, attempts)
            async with self.session_factory() as db:
                return await queue_crud.release_entry(
                    db, entry_id, str(e) or e.__class__.__name__,
                    attempts=attempts,
                    max_attempts=self.max_attempts,
                    now=self.clock(),
                )

        async with self.session_factory() as db:
            await queue_crud.complete_entry(db, entry_id, self.clock(), result=jsonable_encoder(result))
        return "completed"

    async def get_stats(self) -> Dict[str, Any]:
        async with self.session_factory() as db:
            stats = await queue_crud.get_stats(db)
        return {**stats, "is_running": self.is_running}
