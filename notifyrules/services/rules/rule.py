import enum
from typing import List, Sequence

from notifyrules.db.models import Rule, RuleStatus, RuleType
from notifyrules.utils.datetime_utils import add_seconds
from notifyrules.utils.errors import ActionExecutionError
from notifyrules.utils.logging import get_logger
from .base import ActionPlugin, ConditionPlugin
from .context import EvaluationContext
from .registry import PluginRegistry
from .trigger_store import TriggerStore

logger = get_logger()


class EvaluationOutcome(enum.Enum):
    FIRED = "fired"
    DEFERRED = "deferred"


class RuleAggregate:
    """
    A stored rule with its conditions, exceptions and actions instantiated.

    ``evaluate`` walks conditions then exceptions strictly in declaration
    order and stops at the first condition that fails or the first exception
    that holds. Every path that completes writes exactly one trigger candidate,
    or parks the tuple when the deciding plugin is event-driven; launch
    counting and actions are the caller's responsibility.
    """

    def __init__(
        self,
        record: Rule,
        conditions: Sequence[ConditionPlugin],
        exceptions: Sequence[ConditionPlugin],
        actions: Sequence[ActionPlugin],
    ):
        self.record = record
        self.conditions = list(conditions)
        self.exceptions = list(exceptions)
        self.actions = list(actions)

    @classmethod
    def load(cls, record: Rule) -> "RuleAggregate":
        """Build plugins from the stored rows; raises ConfigurationError."""
        conditions: List[ConditionPlugin] = []
        exceptions: List[ConditionPlugin] = []
        for row in sorted(record.conditions, key=lambda c: (c.position, c.id)):
            plugin = PluginRegistry.create_condition(row)
            (exceptions if row.complementary else conditions).append(plugin)

        actions = [
            PluginRegistry.create_action(row)
            for row in sorted(record.actions, key=lambda a: (a.position, a.id))
        ]
        return cls(record, conditions, exceptions, actions)

    @property
    def id(self) -> int:
        return self.record.id

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def max_fires(self) -> int:
        return self.record.max_fires

    @property
    def re_arm_interval(self) -> int:
        return self.record.re_arm_interval

    @property
    def is_schedulable(self) -> bool:
        return (
            self.record.status == RuleStatus.ACTIVE
            and self.record.rule_type == RuleType.RULE
        )

    def evaluate(
        self, ctx: EvaluationContext, triggers: TriggerStore
    ) -> EvaluationOutcome:
        for condition in self.conditions:
            ctx.enter_condition(condition)
            if not condition.evaluate(ctx):
                self._schedule_from(condition, ctx, triggers)
                logger.debug(
                    f"Rule {self.id} deferred by condition {condition!r} "
                    f"for user {ctx.user_id} in course {ctx.course_id}"
                )
                return EvaluationOutcome.DEFERRED

        for exception in self.exceptions:
            ctx.enter_exception(exception)
            if exception.evaluate(ctx):
                # The blocking exception estimates when it stops blocking
                self._schedule_from(exception, ctx, triggers)
                logger.debug(
                    f"Rule {self.id} blocked by exception {exception!r} "
                    f"for user {ctx.user_id} in course {ctx.course_id}"
                )
                return EvaluationOutcome.DEFERRED

        triggers.upsert(
            self.id,
            ctx.user_id,
            ctx.course_id,
            add_seconds(ctx.time_access, self.re_arm_interval),
        )
        return EvaluationOutcome.FIRED

    def _schedule_from(
        self, plugin: ConditionPlugin, ctx: EvaluationContext, triggers: TriggerStore
    ) -> None:
        next_time = plugin.estimate_next_time(ctx)
        if next_time is None:
            # Only an event can change the outcome; stop polling the tuple
            triggers.park(self.id, ctx.user_id, ctx.course_id)
        else:
            triggers.upsert(self.id, ctx.user_id, ctx.course_id, next_time)

    def execute_actions(self, ctx: EvaluationContext) -> List[ActionExecutionError]:
        """
        Run every action in order. A failing action is reported and does not
        stop the ones after it; its own writes are rolled back to a savepoint.
        """
        failures: List[ActionExecutionError] = []
        for action in self.actions:
            try:
                with ctx.db.begin_nested():
                    action.execute(ctx)
            except Exception as e:
                # Actions are attempted at most once per fire
                failure = (
                    e
                    if isinstance(e, ActionExecutionError)
                    else ActionExecutionError(f"{type(e).__name__}: {e}")
                )
                failures.append(failure)
                logger.error(
                    f"Action {action!r} of rule {self.id} failed for user "
                    f"{ctx.user_id} in course {ctx.course_id}: {failure.message}"
                )
        return failures
