"""pillwatch: escalating medication dose reminders.

Typical wiring::

    config = load_config()
    service = ReminderService(config)
    service.start()
"""

from pillwatch.config import Config, load_config
from pillwatch.models import DoseInstance, Medication
from pillwatch.service import ReminderService

__version__ = "0.1.0"

__all__ = [
    "Config",
    "DoseInstance",
    "Medication",
    "ReminderService",
    "load_config",
]
