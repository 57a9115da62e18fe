import asyncio
from datetime import datetime

import notifyrules.plugins  # noqa: F401  registers the bundled plugins
from notifyrules.celery import celery
from notifyrules.services.rules import RuleScheduler
from notifyrules.utils.datetime_utils import naive_utc_now, to_naive_utc
from notifyrules.utils.logging import get_task_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def rule_trigger_processor_task(self, request_id: str, **kwargs):
    """
    Evaluate every (rule, user, course) tuple whose trigger time has been reached.

    Runs every minute. Each due tuple is evaluated in its own transaction;
    failures are reported per tuple and never abort the tick.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
        current_datetime: Optional ISO timestamp used instead of the current time
    """
    return asyncio.run(_async_rule_trigger_processor(request_id, **kwargs))


async def _async_rule_trigger_processor(request_id: str, **kwargs):
    logger = get_task_logger(request_id, "rule_trigger_processor")

    try:
        current = kwargs.get("current_datetime")
        now = (
            to_naive_utc(datetime.fromisoformat(current)) if current else naive_utc_now()
        )

        scheduler = RuleScheduler()
        results = await scheduler.evaluate_due(now)
        summary = scheduler.summarize(results)

        logger.info(
            "Rule trigger processing completed",
            evaluated_count=len(results),
            current_datetime=now.isoformat(),
            **summary,
        )

        return {
            "success": True,
            "evaluated_count": len(results),
            "outcomes": summary,
            "current_datetime": now.isoformat(),
            "request_id": request_id,
        }

    except Exception as e:
        logger.error(
            "Rule trigger processor task exception",
            request_id=request_id,
            error=str(e),
            exc_info=True,
        )
        return {
            "success": False,
            "error": str(e),
            "request_id": request_id,
        }
