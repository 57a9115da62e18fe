from datetime import datetime
from typing import Dict, Optional

from pydantic import Field

from notifyrules.db.models import RuleHealth, RuleStatus
from notifyrules.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class RuleStatusResponse(BaseModel):
    """Scheduling health of a single rule"""

    id: int = Field(..., description="Rule ID")
    name: str = Field(..., description="Rule name")
    status: RuleStatus = Field(..., description="Lifecycle status (active/paused)")
    health: RuleHealth = Field(..., description="Scheduling health flag")
    last_error: Optional[str] = Field(
        default=None, description="Last configuration error, if any"
    )
    max_fires: int = Field(..., description="Maximum launches per user and course")
    re_arm_interval: int = Field(..., description="Seconds between launches")
    runtime: Dict[str, int] = Field(
        ..., description="Re-arm interval split into days, hours, minutes and seconds"
    )
    pending_triggers: int = Field(..., description="Tuples waiting on a trigger time")
    parked_triggers: int = Field(
        ..., description="Tuples waiting on an event or with no launches left"
    )
    next_fire_at: Optional[datetime] = Field(
        default=None, description="Earliest stored trigger time"
    )
    total_fires: int = Field(..., description="Launches across all users and courses")
