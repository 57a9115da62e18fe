from .base import ActionPlugin, ConditionPlugin, NoParameters, NotificationPlugin
from .cache_store import GENERIC_USER_ID, CacheStore
from .context import EvaluationContext
from .launch_ledger import LaunchLedger
from .registry import PluginRegistry
from .rule import EvaluationOutcome, RuleAggregate
from .rule_service import RuleService
from .scheduler import RuleScheduler, TupleOutcome, TupleResult
from .trigger_store import TriggerStore, TupleKey

__all__ = [
    "ActionPlugin",
    "CacheStore",
    "ConditionPlugin",
    "EvaluationContext",
    "EvaluationOutcome",
    "GENERIC_USER_ID",
    "LaunchLedger",
    "NoParameters",
    "NotificationPlugin",
    "PluginRegistry",
    "RuleAggregate",
    "RuleScheduler",
    "RuleService",
    "TriggerStore",
    "TupleKey",
    "TupleOutcome",
    "TupleResult",
]
