from .background import *
from .cron import *

__all__ = [
    # Event Tasks
    "activity_updated_task",
    "activity_completed_task",
    # Scheduled/Cron Tasks
    "rule_trigger_processor_task",
    "rule_primer_task",
]
