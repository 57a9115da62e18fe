from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from notifyrules.services.rules import ConditionPlugin, EvaluationContext
from notifyrules.utils.datetime_utils import to_naive_utc


class DateAfterCondition(ConditionPlugin):
    """Holds from a fixed date onward"""

    plugin_name = "dateafter"

    class Parameters(BaseModel):
        date: datetime

    @property
    def date(self) -> datetime:
        return to_naive_utc(self.params.date)

    def evaluate(self, ctx: EvaluationContext) -> bool:
        return ctx.time_access >= self.date

    def estimate_next_time(self, ctx: EvaluationContext) -> Optional[datetime]:
        if ctx.complementary:
            # Past the date the exception holds for good
            return None if ctx.time_access >= self.date else self.date
        return max(self.date, ctx.time_access)


def create_date_after_condition(
    record_id: int, parameters: Optional[str], cmid: Optional[int] = None
) -> DateAfterCondition:
    return DateAfterCondition(record_id, parameters, cmid)
