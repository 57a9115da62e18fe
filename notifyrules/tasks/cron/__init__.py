from .rule_primer import rule_primer_task
from .rule_trigger_processor import rule_trigger_processor_task

__all__ = [
    "rule_trigger_processor_task",
    "rule_primer_task",
]
