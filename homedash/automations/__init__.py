from homedash.automations.errors import AutomationError
from homedash.automations.models import Action, Automation, Condition, Trigger
from homedash.automations.repository import AutomationRepository
from homedash.automations.store import SqliteAutomationStore

__all__ = [
    "Action",
    "Automation",
    "AutomationError",
    "AutomationRepository",
    "Condition",
    "SqliteAutomationStore",
    "Trigger",
]
