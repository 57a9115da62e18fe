import asyncio
from datetime import datetime
from typing import Optional

from sqlalchemy import select

import notifyrules.plugins  # noqa: F401  registers the bundled plugins
from notifyrules.celery import celery
from notifyrules.db.models import CourseModule
from notifyrules.db.session import SessionLocal
from notifyrules.plugins.conditions import (
    ActivityCompletedCondition,
    ActivityOpenCondition,
)
from notifyrules.services.rules import (
    LaunchLedger,
    PluginRegistry,
    RuleScheduler,
    RuleService,
    TriggerStore,
)
from notifyrules.utils.datetime_utils import naive_utc_now, to_naive_utc
from notifyrules.utils.errors import ConfigurationError
from notifyrules.utils.logging import get_task_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def activity_updated_task(self, request_id: str, course_id: int, cmid: int):
    """
    React to a course module whose dates changed.

    Refreshes the cached open time of every activity-open condition bound to the
    module and moves the affected triggers to the new open time, for enrolled
    users that have launches left.

    Args:
        request_id: The request ID from the originating event
        course_id: Course the module belongs to
        cmid: The updated course module
    """
    return asyncio.run(_async_activity_updated(request_id, course_id, cmid))


async def _async_activity_updated(
    request_id: str, course_id: int, cmid: int, session_factory=None
):
    logger = get_task_logger(request_id, "activity_updated")
    session_factory = session_factory or SessionLocal

    with session_factory() as db_session:
        try:
            service = RuleService(db_session)
            triggers = TriggerStore(db_session)
            ledger = LaunchLedger(db_session)

            conditions = service.get_conditions_by_cm(
                ActivityOpenCondition.plugin_name, course_id, cmid
            )
            user_ids = service.get_enrolled_user_ids(course_id) if conditions else []

            updated_count = 0
            for row in conditions:
                try:
                    plugin = PluginRegistry.create_condition(row)
                except ConfigurationError as e:
                    logger.warning(
                        "Skipping misconfigured condition",
                        condition_id=row.id,
                        rule_id=row.rule_id,
                        error=e.message,
                    )
                    continue

                fire_at = plugin.refresh(db_session, course_id)
                if fire_at is None:
                    continue

                rule = row.rule
                for user_id in user_ids:
                    if not ledger.has_capacity(
                        rule.id, user_id, course_id, rule.max_fires
                    ):
                        continue
                    if triggers.upsert(rule.id, user_id, course_id, fire_at):
                        updated_count += 1

            db_session.commit()

            logger.info(
                "Activity update processed",
                course_id=course_id,
                cmid=cmid,
                condition_count=len(conditions),
                updated_count=updated_count,
            )

            return {
                "success": True,
                "condition_count": len(conditions),
                "updated_count": updated_count,
                "request_id": request_id,
            }

        except Exception as e:
            db_session.rollback()
            logger.error(
                "Activity updated task exception",
                request_id=request_id,
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def activity_completed_task(
    self, request_id: str, user_id: int, cmid: int, **kwargs
):
    """
    React to a user completing a course module.

    Every schedulable rule with a completion condition on the module is
    evaluated for the user right away, unless its launches are used up.

    Args:
        request_id: The request ID from the originating event
        user_id: The user who completed the module
        cmid: The completed course module
        current_datetime: Optional ISO timestamp used instead of the current time
    """
    return asyncio.run(_async_activity_completed(request_id, user_id, cmid, **kwargs))


async def _async_activity_completed(
    request_id: str,
    user_id: int,
    cmid: int,
    session_factory=None,
    current_datetime: Optional[str] = None,
):
    logger = get_task_logger(request_id, "activity_completed")
    session_factory = session_factory or SessionLocal

    try:
        now = (
            to_naive_utc(datetime.fromisoformat(current_datetime))
            if current_datetime
            else naive_utc_now()
        )

        with session_factory() as db_session:
            course_id = db_session.scalar(
                select(CourseModule.course_id).where(CourseModule.id == cmid)
            )
            if course_id is None:
                logger.warning("Completed course module not found", cmid=cmid)
                return {
                    "success": False,
                    "error": f"Course module not found: {cmid}",
                    "request_id": request_id,
                }
            conditions = RuleService(db_session).get_conditions_by_cm(
                ActivityCompletedCondition.plugin_name, course_id, cmid
            )
            rule_ids = sorted({row.rule_id for row in conditions})

        scheduler = RuleScheduler(session_factory=session_factory)
        results = []
        for rule_id in rule_ids:
            result = await asyncio.to_thread(
                scheduler.handle_event, rule_id, user_id, course_id, now
            )
            results.append(result.to_dict())

        logger.info(
            "Activity completion processed",
            user_id=user_id,
            cmid=cmid,
            evaluated_count=len(results),
        )

        return {
            "success": True,
            "evaluated_count": len(results),
            "results": results,
            "request_id": request_id,
        }

    except Exception as e:
        logger.error(
            "Activity completed task exception",
            request_id=request_id,
            error=str(e),
            exc_info=True,
        )
        return {
            "success": False,
            "error": str(e),
            "request_id": request_id,
        }
