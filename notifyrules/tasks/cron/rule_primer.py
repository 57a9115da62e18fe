import asyncio
from datetime import datetime

import notifyrules.plugins  # noqa: F401  registers the bundled plugins
from notifyrules.celery import celery
from notifyrules.services.rules import RuleScheduler
from notifyrules.utils.datetime_utils import naive_utc_now, to_naive_utc
from notifyrules.utils.logging import get_task_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def rule_primer_task(self, request_id: str, **kwargs):
    """
    Hourly task giving new enrolments and newly assigned rules their first evaluation.

    A tuple is new when it has neither a trigger nor a launch record; its first
    evaluation creates the trigger that the minute processor picks up afterwards.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
        current_datetime: Optional ISO timestamp used instead of the current time
    """
    return asyncio.run(_async_rule_primer(request_id, **kwargs))


async def _async_rule_primer(request_id: str, **kwargs):
    logger = get_task_logger(request_id, "rule_primer")

    try:
        current = kwargs.get("current_datetime")
        now = (
            to_naive_utc(datetime.fromisoformat(current)) if current else naive_utc_now()
        )

        scheduler = RuleScheduler()
        results = await scheduler.prime(now)
        summary = scheduler.summarize(results)

        logger.info(
            "Rule priming completed",
            primed_count=len(results),
            current_datetime=now.isoformat(),
            **summary,
        )

        return {
            "success": True,
            "primed_count": len(results),
            "outcomes": summary,
            "current_datetime": now.isoformat(),
            "request_id": request_id,
        }

    except Exception as e:
        logger.error(
            "Rule primer task exception",
            request_id=request_id,
            error=str(e),
            exc_info=True,
        )
        return {
            "success": False,
            "error": str(e),
            "request_id": request_id,
        }
