from typing import Any, Callable, Dict, Optional
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import json
import logging
import re

from crm_automation.core import config
from crm_automation.services.condition_evaluator import resolve_path

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"\{\{([^}]+)\}\}")

RESCHEDULE_UNAVAILABLE = "reschedule link unavailable"


def _first(*values: Any) -> Optional[Any]:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _section(context: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = resolve_path(context, name)
    return value if isinstance(value, dict) else {}


def _email_local_part(email: Optional[str]) -> Optional[str]:
    if not email or "@" not in email:
        return None
    return email.split("@", 1)[0] or None


def _joined(first: Optional[str], last: Optional[str]) -> Optional[str]:
    if first and last:
        return f"{first} {last}"
    return None


def _name_words(name: Optional[str]):
    return (name or "").split()


# --- Fallback chains ---
def _contact_name(context):
    contact = _section(context, "contact")
    first, last = contact.get("firstName"), contact.get("lastName")
    return _first(
        contact.get("fullName"),
        contact.get("name"),
        _joined(first, last),
        first,
        last,
        _email_local_part(contact.get("email")),
        "Contact",
    )


def _contact_first_name(context):
    contact = _section(context, "contact")
    words = _name_words(contact.get("fullName") or contact.get("name"))
    return _first(
        contact.get("firstName"),
        words[0] if words else None,
        _email_local_part(contact.get("email")),
        "Contact",
    )


def _contact_last_name(context):
    contact = _section(context, "contact")
    words = _name_words(contact.get("fullName") or contact.get("name"))
    return _first(contact.get("lastName"), " ".join(words[1:]))


def _contact_email(context):
    return _first(_section(context, "contact").get("email"), "No email")


def _project_title(context):
    project = _section(context, "project")
    description = project.get("description")
    return _first(
        project.get("title"),
        project.get("name"),
        description[:50] if description else None,
        "Project",
    )


def _company_name(context):
    location = _section(context, "location")
    return _first(
        location.get("name"),
        location.get("companyName"),
        location.get("businessName"),
        "Company",
    )


def _user_name(context):
    user = _section(context, "user")
    first, last = user.get("firstName"), user.get("lastName")
    return _first(
        user.get("name"),
        user.get("fullName"),
        _joined(first, last),
        first,
        _email_local_part(user.get("email")),
        "Team Member",
    )


def _user_first_name(context):
    user = _section(context, "user")
    words = _name_words(user.get("name"))
    return _first(user.get("firstName"), words[0] if words else None, "Team Member")


def _user_last_name(context):
    user = _section(context, "user")
    words = _name_words(user.get("name"))
    return _first(user.get("lastName"), " ".join(words[1:]))


def _user_phone(context):
    return _first(_section(context, "user").get("phone"), _section(context, "location").get("phone"))


def _event_type(context):
    return _first(_section(context, "event").get("type"), "Event")


def _appointment_title(context):
    appointment = _section(context, "appointment")
    return _first(appointment.get("title"), appointment.get("name"), "your appointment")


def _appointment_start(context) -> Optional[datetime]:
    appointment = _section(context, "appointment")
    raw = _first(appointment.get("scheduledTime"), appointment.get("start"), appointment.get("startTime"))
    return parse_datetime(raw)


def _appointment_timezone(context) -> ZoneInfo:
    """Contact, then user, then location, then the service default."""
    candidates = (
        _section(context, "contact").get("timezone"),
        _section(context, "user").get("timezone"),
        _section(context, "location").get("timezone"),
        config.DEFAULT_TIMEZONE,
    )
    for name in candidates:
        if not name:
            continue
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, trying next candidate", name)
    return ZoneInfo("UTC")


def _appointment_time(context):
    start = _appointment_start(context)
    if start is None:
        return None
    local = start.astimezone(_appointment_timezone(context))
    return f"{local.strftime('%I:%M %p').lstrip('0')} {local.tzname()}"


def _appointment_date(context):
    start = _appointment_start(context)
    if start is None:
        return None
    local = start.astimezone(_appointment_timezone(context))
    return f"{local:%A}, {local:%B} {local.day}, {local.year}"


def _reschedule_link(context):
    appointment = _section(context, "appointment")
    calendar_id = _first(appointment.get("calendarId"), _section(context, "event").get("calendarId"))
    external_id = _first(appointment.get("externalId"), appointment.get("appointmentId"))
    if calendar_id and external_id:
        return f"{config.RESCHEDULE_BASE_URL}/{calendar_id}?event_id={external_id}"

    logger.warning(
        "Missing calendar id or external appointment id for reschedule link (calendar=%s, appointment=%s)",
        bool(calendar_id), bool(external_id),
    )
    return RESCHEDULE_UNAVAILABLE


SPECIAL_PATHS: Dict[str, Callable[[Dict[str, Any]], Optional[Any]]] = {
    "contact.name": _contact_name,
    "contact.fullName": _contact_name,
    "contact.firstName": _contact_first_name,
    "contact.lastName": _contact_last_name,
    "contact.email": _contact_email,
    "project.title": _project_title,
    "project.name": _project_title,
    "company.name": _company_name,
    "user.name": _user_name,
    "user.fullName": _user_name,
    "user.firstName": _user_first_name,
    "user.lastName": _user_last_name,
    "user.phone": _user_phone,
    "event.type": _event_type,
    "appointment.title": _appointment_title,
    "appointment.time": _appointment_time,
    "appointment.date": _appointment_date,
    "reschedule.link": _reschedule_link,
    "appointment.rescheduleLink": _reschedule_link,
}


def parse_datetime(value: Any) -> Optional[datetime]:
    """ISO string or datetime -> aware UTC datetime. Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def resolve_token(path: str, context: Dict[str, Any]) -> Optional[str]:
    handler = SPECIAL_PATHS.get(path)
    value = handler(context) if handler else resolve_path(context, path)
    if value is None or value == "":
        return None
    return _stringify(value)


def replace_variables(text: Optional[str], context: Dict[str, Any]) -> Optional[str]:
    """
    Replace `{{ path }}` tokens in `text` with values from `context`.

    Special paths run their fallback chain, anything else is a dotted lookup.
    A token that resolves to nothing stays in the output unchanged.
    """
    if not text:
        return text

    def _replace(match: re.Match) -> str:
        path = match.group(1).strip()
        try:
            value = resolve_token(path, context or {})
        except Exception:
            logger.exception("Failed to resolve template variable %s", path)
            value = None
        return match.group(0) if value is None else value

    return TOKEN_RE.sub(_replace, str(text))
