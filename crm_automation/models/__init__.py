from .automation_rule import AutomationRule
from .automation_queue import AutomationQueueEntry
from .contact import Contact
from .project import Project
from .quote import Quote
from .appointment import Appointment
from .user import User
from .location import Location

__all__ = ["AutomationRule", "AutomationQueueEntry", "Contact", "Project", "Quote", "Appointment", "User", "Location"]
