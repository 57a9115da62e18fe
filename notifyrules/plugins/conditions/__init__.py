from .activity_completed import (
    ActivityCompletedCondition,
    create_activity_completed_condition,
)
from .activity_open import ActivityOpenCondition, create_activity_open_condition
from .date_after import DateAfterCondition, create_date_after_condition
from .weekend import WeekendCondition, create_weekend_condition

__all__ = [
    "ActivityCompletedCondition",
    "ActivityOpenCondition",
    "DateAfterCondition",
    "WeekendCondition",
    "create_activity_completed_condition",
    "create_activity_open_condition",
    "create_date_after_condition",
    "create_weekend_condition",
]
