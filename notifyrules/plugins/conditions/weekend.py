from datetime import datetime
from typing import Optional

from notifyrules.services.rules import ConditionPlugin, EvaluationContext
from notifyrules.utils.datetime_utils import next_weekday_start

SATURDAY = 5
MONDAY = 0


class WeekendCondition(ConditionPlugin):
    """Holds on Saturdays and Sundays (UTC)"""

    plugin_name = "weekend"

    def evaluate(self, ctx: EvaluationContext) -> bool:
        return ctx.time_access.weekday() >= SATURDAY

    def estimate_next_time(self, ctx: EvaluationContext) -> Optional[datetime]:
        if ctx.complementary:
            return next_weekday_start(ctx.time_access, MONDAY)
        return next_weekday_start(ctx.time_access, SATURDAY)


def create_weekend_condition(
    record_id: int, parameters: Optional[str], cmid: Optional[int] = None
) -> WeekendCondition:
    return WeekendCondition(record_id, parameters, cmid)
