from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from notifyrules.db.models import Course, CourseModule
from notifyrules.services.rules import (
    GENERIC_USER_ID,
    CacheStore,
    ConditionPlugin,
    EvaluationContext,
)
from notifyrules.utils.errors import ConfigurationError


class ActivityOpenCondition(ConditionPlugin):
    """
    Holds once a course module has been open for ``time`` seconds.

    The open time is the same for every user, so it is cached once per course
    under the generic user id. Evaluation never overwrites a cached value;
    only an update of the module itself refreshes it (see ``refresh``).
    """

    plugin_name = "activityopen"
    requires_cmid = True

    class Parameters(BaseModel):
        time: int = Field(default=0, ge=0)

    @property
    def offset(self) -> timedelta:
        return timedelta(seconds=self.params.time)

    @staticmethod
    def compute_open_time(
        db_session: Session, course_id: int, cmid: int
    ) -> Optional[datetime]:
        """Module open time, falling back to the course start date"""
        row = db_session.execute(
            select(CourseModule.time_open, Course.start_date)
            .join(Course, Course.id == CourseModule.course_id)
            .where(CourseModule.id == cmid, CourseModule.course_id == course_id)
        ).one_or_none()
        if row is None:
            raise ConfigurationError(
                f"Course module {cmid} does not exist in course {course_id}"
            )
        time_open, start_date = row
        return time_open or start_date

    def open_time(self, ctx: EvaluationContext) -> Optional[datetime]:
        cached = ctx.cache.get(
            GENERIC_USER_ID, ctx.course_id, self.plugin_name, self.id
        )
        if cached is not None:
            return cached

        open_time = self.compute_open_time(ctx.db, ctx.course_id, self.cmid)
        if open_time is not None:
            ctx.cache.upsert(
                GENERIC_USER_ID,
                ctx.course_id,
                self.plugin_name,
                self.id,
                open_time,
                update_if_exists=False,
            )
        return open_time

    def refresh(self, db_session: Session, course_id: int) -> Optional[datetime]:
        """
        Recompute the cached open time after the module changed and return
        the new time at which the condition starts to hold.
        """
        open_time = self.compute_open_time(db_session, course_id, self.cmid)
        if open_time is None:
            return None
        CacheStore(db_session).upsert(
            GENERIC_USER_ID,
            course_id,
            self.plugin_name,
            self.id,
            open_time,
            update_if_exists=True,
        )
        return open_time + self.offset

    def evaluate(self, ctx: EvaluationContext) -> bool:
        open_time = self.open_time(ctx)
        if open_time is None:
            return False
        return ctx.time_access >= open_time + self.offset

    def estimate_next_time(self, ctx: EvaluationContext) -> Optional[datetime]:
        if ctx.complementary:
            return None
        open_time = self.open_time(ctx)
        if open_time is None:
            return None
        return open_time + self.offset


def create_activity_open_condition(
    record_id: int, parameters: Optional[str], cmid: Optional[int] = None
) -> ActivityOpenCondition:
    return ActivityOpenCondition(record_id, parameters, cmid)
