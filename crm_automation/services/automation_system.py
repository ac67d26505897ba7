from typing import Callable, Dict, Optional
from datetime import datetime
import logging

from crm_automation.core import config
from crm_automation.core.clock import utcnow
from crm_automation.crud import automation_queue as queue_crud
from crm_automation.schemas.automation import DomainEvent, MatchReport
from crm_automation.services.action_dispatcher import ActionDispatcher, ActionRegistry, Effector
from crm_automation.services.event_bus import EventBus
from crm_automation.services.queue_processor import AutomationQueueProcessor
from crm_automation.services.rule_matcher import AutomationEventListener

logger = logging.getLogger(__name__)


class AutomationSystem:
    """
    Wires the engine together: event bus, rule listener, action registry,
    dispatcher and queue processor, all sharing one session factory.
    """

    def __init__(
        self,
        session_factory,
        redis=None,
        effectors: Optional[Dict[str, Effector]] = None,
        clock: Callable[[], datetime] = utcnow,
        interval_seconds: float = config.POLL_INTERVAL_SECONDS,
        effector_timeout_seconds: Optional[float] = config.EFFECTOR_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.clock = clock

        self.bus = EventBus()
        self.listener = AutomationEventListener(session_factory, redis=redis, clock=clock)
        self.listener.attach(self.bus)

        self.registry = ActionRegistry()
        self.registry.register_many(effectors or {})

        self.dispatcher = ActionDispatcher(session_factory, self.registry, timeout_seconds=effector_timeout_seconds)
        self.processor = AutomationQueueProcessor(
            session_factory,
            self.dispatcher,
            interval_seconds=interval_seconds,
            clock=clock,
        )

    def start(self) -> None:
        missing = self.registry.missing()
        if missing:
            logger.warning("No effector registered for action types: %s", ", ".join(missing))
        self.processor.start()

    async def stop(self) -> None:
        await self.processor.stop()

    async def ingest(self, event: DomainEvent) -> Optional[MatchReport]:
        """Publish an event and return the listener's match report."""
        for result in await self.bus.publish(event):
            if isinstance(result, MatchReport):
                return result
        return None

    async def get_stats(self) -> Dict:
        return await self.processor.get_stats()

    async def cleanup(self) -> Dict:
        async with self.session_factory() as db:
            report = await queue_crud.cleanup_entries(
                db,
                now=self.clock(),
                completed_retention_days=config.COMPLETED_RETENTION_DAYS,
                retention_days=config.QUEUE_RETENTION_DAYS,
            )
        logger.info(
            "Queue cleanup: %s completed and %s old entries deleted, %s failures in the last 24h",
            report["deleted_completed"], report["deleted_old"], report["recent_failures"],
        )
        return report
