from datetime import datetime
from typing import Optional

from sqlalchemy import select

from notifyrules.db.models import ActivityCompletion
from notifyrules.services.rules import ConditionPlugin, EvaluationContext


class ActivityCompletedCondition(ConditionPlugin):
    """Holds once the user has completed the course module"""

    plugin_name = "activitycompleted"
    requires_cmid = True

    def evaluate(self, ctx: EvaluationContext) -> bool:
        completion_id = ctx.db.scalar(
            select(ActivityCompletion.id).where(
                ActivityCompletion.cmid == self.cmid,
                ActivityCompletion.user_id == ctx.user_id,
            )
        )
        return completion_id is not None

    def estimate_next_time(self, ctx: EvaluationContext) -> Optional[datetime]:
        # Completion is only known when it happens
        return None


def create_activity_completed_condition(
    record_id: int, parameters: Optional[str], cmid: Optional[int] = None
) -> ActivityCompletedCondition:
    return ActivityCompletedCondition(record_id, parameters, cmid)
