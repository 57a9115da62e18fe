import asyncio
import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import selectinload

from notifyrules.config.settings import settings
from notifyrules.db.models import Rule, RuleHealth, RuleStatus, RuleType
from notifyrules.db.session import SessionLocal
from notifyrules.utils.datetime_utils import naive_utc_now, to_naive_utc
from notifyrules.utils.errors import (
    ActionExecutionError,
    ConfigurationError,
    TransientEvaluationError,
)
from notifyrules.utils.logging import get_logger
from .context import EvaluationContext
from .launch_ledger import LaunchLedger
from .rule import EvaluationOutcome, RuleAggregate
from .rule_service import RuleService
from .trigger_store import TriggerStore, TupleKey

logger = get_logger()


class TupleOutcome(enum.Enum):
    FIRED = "fired"
    DEFERRED = "deferred"
    LIMIT_REACHED = "limit_reached"
    SKIPPED = "skipped"
    CONFIG_ERROR = "config_error"
    FAILED = "failed"


@dataclass
class TupleResult:
    key: TupleKey
    outcome: TupleOutcome
    fire_count: Optional[int] = None
    action_failures: List[ActionExecutionError] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.key.rule_id,
            "user_id": self.key.user_id,
            "course_id": self.key.course_id,
            "outcome": self.outcome.value,
            "fire_count": self.fire_count,
            "action_failures": [failure.message for failure in self.action_failures],
            "error": self.error,
        }


class EvaluationDeadline:
    """
    Shared between a worker thread and the loop awaiting it. Whichever side
    gets the lock first wins: the loop expires the evaluation, or the worker
    claims the commit.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._expired = False
        self._committing = False

    @property
    def expired(self) -> bool:
        return self._expired

    def expire(self) -> bool:
        with self._lock:
            if self._committing:
                return False
            self._expired = True
            return True

    def claim_commit(self) -> bool:
        with self._lock:
            if self._expired:
                return False
            self._committing = True
            return True


class _Abandoned(Exception):
    pass


class RuleScheduler:
    """
    Drives evaluation of due (rule, user, course) tuples.

    Each tuple runs in its own session and transaction: the trigger re-arm,
    the launch count and the actions' writes commit together or not at all.
    A failing tuple never affects the others in the batch.
    """

    def __init__(
        self,
        session_factory=None,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        launch_check: Optional[str] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.concurrency = concurrency or settings.RULE_EVALUATION_CONCURRENCY
        self.timeout = timeout or settings.RULE_EVALUATION_TIMEOUT_SECONDS
        self.launch_check = launch_check or settings.RULE_LAUNCH_CHECK
        self.batch_size = batch_size or settings.RULE_DUE_BATCH_SIZE

    @staticmethod
    def _blocked_rules():
        return select(Rule.id).where(
            or_(
                Rule.status != RuleStatus.ACTIVE,
                Rule.rule_type != RuleType.RULE,
                Rule.health != RuleHealth.OK,
            )
        )

    async def evaluate_due(self, now: Optional[datetime] = None) -> List[TupleResult]:
        """Evaluate every tuple whose trigger time is at or before ``now``"""
        now = to_naive_utc(now or naive_utc_now())
        with self.session_factory() as db_session:
            due = TriggerStore(db_session).due(
                now, self.batch_size, exclude_rules=self._blocked_rules()
            )

        if not due:
            logger.debug(f"No due triggers at {now.isoformat()}")
            return []

        results = await self._evaluate_batch(due, now, require_due=True)
        logger.info(
            f"Evaluated {len(results)} due tuples at {now.isoformat()}",
            **self.summarize(results),
        )
        return results

    @staticmethod
    def summarize(results: List[TupleResult]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for result in results:
            counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
        return counts

    async def _evaluate_batch(
        self, keys: List[TupleKey], now: datetime, require_due: bool
    ) -> List[TupleResult]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(key: TupleKey) -> TupleResult:
            # The slot is held until the worker thread ends, not until the timeout
            await semaphore.acquire()
            return await self._run_with_timeout(
                key, now, require_due, on_done=semaphore.release
            )

        return list(await asyncio.gather(*(run(key) for key in keys)))

    async def _run_with_timeout(
        self,
        key: TupleKey,
        now: datetime,
        require_due: bool = True,
        on_done: Optional[Callable[[], None]] = None,
    ) -> TupleResult:
        deadline = EvaluationDeadline()
        task = asyncio.ensure_future(
            asyncio.to_thread(
                self.evaluate_tuple,
                key.rule_id,
                key.user_id,
                key.course_id,
                now,
                require_due,
                deadline,
            )
        )
        if on_done is not None:
            task.add_done_callback(lambda _: on_done())
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout)
        except asyncio.TimeoutError:
            if not deadline.expire():
                # The worker is already committing; its result stands
                return await task
            logger.warning(
                f"Evaluation of rule {key.rule_id} for user {key.user_id} in course "
                f"{key.course_id} timed out after {self.timeout}s"
            )
            return TupleResult(key, TupleOutcome.DEFERRED, error="evaluation timed out")

    def evaluate_tuple(
        self,
        rule_id: int,
        user_id: int,
        course_id: int,
        now: Optional[datetime] = None,
        require_due: bool = False,
        deadline: Optional[EvaluationDeadline] = None,
        check_capacity: bool = False,
    ) -> TupleResult:
        """
        Evaluate one tuple and commit its effects.

        With ``require_due`` the trigger row is locked and re-read first, and
        the tuple is skipped when another worker already moved it forward.
        """
        key = TupleKey(rule_id, user_id, course_id)
        now = to_naive_utc(now or naive_utc_now())

        db_session = self.session_factory()
        try:
            result = self._evaluate(
                db_session, key, now, require_due, deadline, check_capacity
            )
            if deadline is not None and not deadline.claim_commit():
                raise _Abandoned()
            db_session.commit()
            if result.outcome == TupleOutcome.FIRED:
                logger.info(
                    f"Rule {rule_id} fired for user {user_id} in course {course_id} "
                    f"(fire {result.fire_count})"
                )
            return result
        except _Abandoned:
            db_session.rollback()
            return TupleResult(key, TupleOutcome.DEFERRED, error="evaluation timed out")
        except ConfigurationError as e:
            db_session.rollback()
            self._flag_configuration_error(rule_id, e)
            return TupleResult(key, TupleOutcome.CONFIG_ERROR, error=e.message)
        except TransientEvaluationError as e:
            db_session.rollback()
            logger.warning(
                f"Rule {rule_id} deferred for user {user_id} in course {course_id}: "
                f"{e.message}"
            )
            return TupleResult(key, TupleOutcome.DEFERRED, error=e.message)
        except Exception as e:
            db_session.rollback()
            logger.error(
                f"Evaluation of rule {rule_id} for user {user_id} in course "
                f"{course_id} failed: {e}",
                exc_info=True,
            )
            return TupleResult(key, TupleOutcome.FAILED, error=str(e))
        finally:
            db_session.close()

    def _evaluate(
        self,
        db_session,
        key: TupleKey,
        now: datetime,
        require_due: bool,
        deadline: Optional[EvaluationDeadline],
        check_capacity: bool,
    ) -> TupleResult:
        triggers = TriggerStore(db_session)
        ledger = LaunchLedger(db_session)

        if require_due:
            next_fire_at = triggers.get_for_update(*key)
            if next_fire_at is None or next_fire_at > now:
                return TupleResult(key, TupleOutcome.SKIPPED)

        record = db_session.scalar(
            select(Rule)
            .options(selectinload(Rule.conditions), selectinload(Rule.actions))
            .where(Rule.id == key.rule_id)
        )
        if record is None:
            return TupleResult(key, TupleOutcome.SKIPPED, error="rule not found")
        if record.health == RuleHealth.CONFIG_ERROR:
            return TupleResult(key, TupleOutcome.CONFIG_ERROR, error=record.last_error)

        aggregate = RuleAggregate.load(record)
        if not aggregate.is_schedulable:
            return TupleResult(key, TupleOutcome.SKIPPED)

        if (check_capacity or self.launch_check == "before") and not ledger.has_capacity(
            *key, aggregate.max_fires
        ):
            triggers.park(*key)
            return TupleResult(
                key, TupleOutcome.LIMIT_REACHED, fire_count=ledger.get_fire_count(*key)
            )

        ctx = EvaluationContext(key.rule_id, key.user_id, key.course_id, now, db_session)
        if aggregate.evaluate(ctx, triggers) == EvaluationOutcome.DEFERRED:
            return TupleResult(key, TupleOutcome.DEFERRED)

        fire_count = ledger.record_fire(*key, max_fires=aggregate.max_fires)
        if fire_count is None:
            # Used up; raising max_fires schedules the tuple again
            triggers.park(*key)
            return TupleResult(
                key, TupleOutcome.LIMIT_REACHED, fire_count=aggregate.max_fires
            )

        if deadline is not None and deadline.expired:
            raise _Abandoned()
        failures = aggregate.execute_actions(ctx)
        return TupleResult(key, TupleOutcome.FIRED, fire_count, failures)

    def _flag_configuration_error(self, rule_id: int, error: ConfigurationError) -> None:
        """Mark the rule broken so later ticks skip it until it is edited"""
        logger.error(f"Rule {rule_id} has a configuration error: {error.message}")
        with self.session_factory() as db_session:
            try:
                db_session.execute(
                    update(Rule)
                    .where(Rule.id == rule_id)
                    .values(health=RuleHealth.CONFIG_ERROR, last_error=error.message)
                )
                db_session.commit()
            except Exception as e:
                db_session.rollback()
                logger.error(f"Failed to flag rule {rule_id}: {e}")

    def handle_event(
        self, rule_id: int, user_id: int, course_id: int, now: Optional[datetime] = None
    ) -> TupleResult:
        """
        Evaluate a tuple immediately because a host event may have changed
        its conditions. Tuples that already used up their launches are not
        evaluated at all; they are parked instead.
        """
        return self.evaluate_tuple(
            rule_id, user_id, course_id, now, require_due=False, check_capacity=True
        )

    async def prime(self, now: Optional[datetime] = None) -> List[TupleResult]:
        """
        Evaluate every in-scope tuple that has never been seen: enrolled
        users of courses a schedulable rule applies to, with neither a
        trigger nor a launch record yet.
        """
        now = to_naive_utc(now or naive_utc_now())
        keys = await asyncio.to_thread(self._unseen_tuples)
        if not keys:
            return []

        results = await self._evaluate_batch(keys, now, require_due=False)
        logger.info(
            f"Primed {len(results)} new tuples at {now.isoformat()}",
            **self.summarize(results),
        )
        return results

    def _unseen_tuples(self) -> List[TupleKey]:
        keys: List[TupleKey] = []
        with self.session_factory() as db_session:
            service = RuleService(db_session)
            triggers = TriggerStore(db_session)
            ledger = LaunchLedger(db_session)
            rules = db_session.scalars(
                select(Rule)
                .options(selectinload(Rule.contexts))
                .where(
                    Rule.status == RuleStatus.ACTIVE,
                    Rule.rule_type == RuleType.RULE,
                    Rule.health == RuleHealth.OK,
                )
                .order_by(Rule.id)
            ).all()
            for rule in rules:
                for course_id in service.get_course_ids_for_rule(rule):
                    for user_id in service.get_enrolled_user_ids(course_id):
                        key = TupleKey(rule.id, user_id, course_id)
                        # Parked tuples have been seen too
                        if triggers.exists(*key):
                            continue
                        if ledger.get_fire_count(*key) > 0:
                            continue
                        keys.append(key)
        return keys
