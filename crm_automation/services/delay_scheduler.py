from typing import Any, Dict, Optional, Tuple
from datetime import datetime, timedelta
from dataclasses import dataclass
import logging

from crm_automation.core.clock import to_naive_utc
from crm_automation.services.template_engine import parse_datetime

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
UNIT_MS = {
    "minutes": MINUTE_MS,
    "hours": 60 * MINUTE_MS,
    "days": 24 * 60 * MINUTE_MS,
    "weeks": 7 * 24 * 60 * MINUTE_MS,
}


def unit_ms(unit: Optional[str], default: str = "minutes") -> int:
    return UNIT_MS.get(unit or default, UNIT_MS[default])


def offset(amount: float, unit: Optional[str], default: str = "minutes") -> timedelta:
    return timedelta(milliseconds=float(amount) * unit_ms(unit, default))


@dataclass
class Schedule:
    """Where a new queue entry goes: `pending` now, or `scheduled` for later."""
    status: str
    scheduled_for: Optional[datetime] = None

    @property
    def immediate(self) -> bool:
        return self.scheduled_for is None


IMMEDIATE = Schedule(status="pending")


def schedule_for_action(action: Dict[str, Any], now: datetime) -> Schedule:
    """
    Fixed delay from `action.config.delay` ({amount, unit}).
    No delay, or an amount of zero or less, runs immediately.
    """
    config = action.get("config") or {}
    delay = config.get("delay") or action.get("delay")
    if not isinstance(delay, dict):
        return IMMEDIATE

    try:
        amount = float(delay.get("amount") or 0)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric delay amount %r", delay.get("amount"))
        return IMMEDIATE

    if amount <= 0:
        return IMMEDIATE
    return Schedule(status="scheduled", scheduled_for=now + offset(amount, delay.get("unit")))


def schedule_relative(
    reference: datetime,
    amount: float,
    unit: Optional[str],
    timing: str,
    now: datetime,
) -> Optional[datetime]:
    """`before` subtracts from the reference, `after` adds. A time already past -> None."""
    delta = offset(amount, unit, default="hours")
    run_at = reference - delta if timing == "before" else reference + delta
    if run_at <= now:
        return None
    return run_at


def time_based_offset(trigger: Dict[str, Any]) -> Optional[Tuple[float, str, str]]:
    """
    (amount, unit, timing) of a time-based trigger.

    Accepts `{timing, amount, unit}` or the older
    `config.delayHours` + `config.delayMinutes` form, which counts after the start.
    """
    config = trigger.get("config") or {}
    if config.get("delayHours") is not None or config.get("delayMinutes") is not None:
        minutes = float(config.get("delayHours") or 0) * 60 + float(config.get("delayMinutes") or 0)
        return minutes, "minutes", "after"

    if trigger.get("amount") is not None:
        return float(trigger["amount"]), trigger.get("unit") or "hours", trigger.get("timing") or "before"
    return None


def stage_delay_for(trigger: Dict[str, Any], now: datetime) -> Optional[datetime]:
    """Run time of a `stage-delay` rule entered now (`config.delayAmount` / `config.delayUnit`)."""
    config = trigger.get("config") or {}
    amount = config.get("delayAmount", trigger.get("amount"))
    if amount is None:
        return None
    unit = config.get("delayUnit") or trigger.get("unit") or "hours"
    if unit not in ("minutes", "hours", "days"):
        unit = "hours"
    return now + offset(float(amount), unit, default="hours")


def reference_time(payload: Dict[str, Any]) -> Optional[datetime]:
    """Appointment start from the event payload, as naive UTC."""
    appointment = payload.get("appointment") if isinstance(payload.get("appointment"), dict) else {}
    for raw in (
        payload.get("start"),
        payload.get("startTime"),
        payload.get("scheduledTime"),
        appointment.get("start"),
        appointment.get("startTime"),
    ):
        parsed = parse_datetime(raw)
        if parsed is not None:
            return to_naive_utc(parsed)
    return None
