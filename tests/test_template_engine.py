"""Tests for template variable replacement."""

from datetime import datetime

from crm_automation.core import config
from crm_automation.services.template_engine import parse_datetime, replace_variables


class TestDefaultResolution:
    """Generic dotted-path tokens."""

    def test_unknown_path_is_kept(self):
        """Unresolved tokens stay verbatim."""
        assert replace_variables("{{unknown.path}}", {}) == "{{unknown.path}}"

    def test_whitespace_is_trimmed(self):
        """Spaces inside the braces are ignored."""
        assert replace_variables("Hi {{ project.status }}!", {"project": {"status": "open"}}) == "Hi open!"

    def test_non_string_values(self):
        """Numbers and booleans are stringified."""
        context = {"quote": {"count": 3, "paid": True}}
        assert replace_variables("{{quote.count}} {{quote.paid}}", context) == "3 true"

    def test_empty_text(self):
        """Empty and None text come back unchanged."""
        assert replace_variables("", {}) == ""
        assert replace_variables(None, {}) is None

    def test_text_without_tokens(self):
        """Plain text passes through."""
        assert replace_variables("No tokens here", {"a": 1}) == "No tokens here"


class TestContactFallbacks:
    """contact.* fallback chains."""

    def test_name_from_first_name_only(self):
        """contact.name falls back to the first name."""
        assert replace_variables("{{contact.name}}", {"contact": {"firstName": "Jo"}}) == "Jo"

    def test_name_prefers_full_name(self):
        """fullName wins over first and last."""
        context = {"contact": {"fullName": "Jo Smith", "firstName": "X", "lastName": "Y"}}
        assert replace_variables("{{contact.name}}", context) == "Jo Smith"

    def test_name_from_first_and_last(self):
        """First and last are joined."""
        context = {"contact": {"firstName": "Jo", "lastName": "Smith"}}
        assert replace_variables("{{contact.fullName}}", context) == "Jo Smith"

    def test_name_from_email(self):
        """The email local part is used when no name exists."""
        assert replace_variables("{{contact.name}}", {"contact": {"email": "jo.smith@example.com"}}) == "jo.smith"

    def test_name_literal_default(self):
        """Nothing at all gives the literal default."""
        assert replace_variables("{{contact.name}}", {}) == "Contact"

    def test_first_name_from_full_name(self):
        """firstName takes the first word of the full name."""
        assert replace_variables("{{contact.firstName}}", {"contact": {"name": "Jo Smith"}}) == "Jo"

    def test_email_default(self):
        """contact.email has a literal default."""
        assert replace_variables("{{contact.email}}", {"contact": {}}) == "No email"


class TestOtherFallbacks:
    """project, company, user and appointment fallbacks."""

    def test_project_title_from_description(self):
        """project.title falls back to the first 50 characters of the description."""
        description = "x" * 80
        assert replace_variables("{{project.title}}", {"project": {"description": description}}) == "x" * 50

    def test_company_name(self):
        """company.name reads the location."""
        context = {"location": {"businessName": "Acme"}}
        assert replace_variables("{{company.name}}", context) == "Acme"
        assert replace_variables("{{company.name}}", {}) == "Company"

    def test_user_name(self):
        """user.name falls back to first and last, then a literal."""
        assert replace_variables("{{user.name}}", {"user": {"firstName": "Al", "lastName": "Bo"}}) == "Al Bo"
        assert replace_variables("{{user.name}}", {}) == "Team Member"

    def test_appointment_title(self):
        """appointment.title never falls back to the project title."""
        context = {"project": {"title": "Roof"}, "appointment": {}}
        assert replace_variables("{{appointment.title}}", context) == "your appointment"


class TestAppointmentTime:
    """Timezone-aware appointment formatting."""

    def test_time_in_contact_timezone(self):
        """Contact timezone wins over user and location."""
        context = {
            "appointment": {"start": "2025-03-03T16:30:00Z"},
            "contact": {"timezone": "America/Denver"},
            "user": {"timezone": "America/New_York"},
        }
        assert replace_variables("{{appointment.time}}", context) == "9:30 AM MST"

    def test_date_in_location_timezone(self):
        """Location timezone is used when contact and user have none."""
        context = {
            "appointment": {"startTime": datetime(2025, 3, 4, 3, 0)},
            "location": {"timezone": "America/Los_Angeles"},
        }
        assert replace_variables("{{appointment.date}}", context) == "Monday, March 3, 2025"

    def test_missing_start_keeps_token(self):
        """Without a start time the token stays."""
        assert replace_variables("{{appointment.time}}", {"appointment": {}}) == "{{appointment.time}}"

    def test_parse_datetime(self):
        """ISO strings with Z parse as UTC; garbage gives None."""
        assert parse_datetime("2025-03-03T16:30:00Z").hour == 16
        assert parse_datetime("not a date") is None


class TestRescheduleLink:
    """reschedule.link synthesis."""

    def test_link_from_calendar_and_external_id(self):
        """Both ids give a booking link."""
        context = {"appointment": {"calendarId": "cal1", "externalId": "evt9"}}
        expected = f"{config.RESCHEDULE_BASE_URL}/cal1?event_id=evt9"
        assert replace_variables("{{reschedule.link}}", context) == expected

    def test_calendar_from_event(self):
        """The calendar id may come from the event."""
        context = {"appointment": {"externalId": "evt9"}, "event": {"calendarId": "cal2"}}
        assert replace_variables("{{appointment.rescheduleLink}}", context).endswith("/cal2?event_id=evt9")

    def test_unavailable(self):
        """Missing ids degrade to a literal."""
        assert replace_variables("{{reschedule.link}}", {}) == "reschedule link unavailable"
