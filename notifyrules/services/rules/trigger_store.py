from datetime import datetime
from typing import List, NamedTuple, Optional

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from notifyrules.db.models import RuleTrigger
from notifyrules.db.upsert import conflict_insert
from notifyrules.utils.datetime_utils import naive_utc_now, to_naive_utc
from notifyrules.utils.errors import StoreError


class TupleKey(NamedTuple):
    rule_id: int
    user_id: int
    course_id: int


class TriggerStore:
    """
    Persisted next evaluation time per (rule, user, course).

    Updates are forward-only: an existing trigger is only ever moved later,
    never earlier, so concurrent or repeated upserts converge on the latest
    known time.

    A parked trigger (``next_fire_at`` NULL) keeps the tuple known but off
    polling: nothing about it changes with time, so only an external event or
    a new upsert schedules it again.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def _key_filter(self, rule_id: int, user_id: int, course_id: int):
        return and_(
            RuleTrigger.rule_id == rule_id,
            RuleTrigger.user_id == user_id,
            RuleTrigger.course_id == course_id,
        )

    def get(self, rule_id: int, user_id: int, course_id: int) -> Optional[datetime]:
        try:
            return self.db.scalar(
                select(RuleTrigger.next_fire_at).where(
                    self._key_filter(rule_id, user_id, course_id)
                )
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read trigger: {e}") from e

    def exists(self, rule_id: int, user_id: int, course_id: int) -> bool:
        """Whether the tuple has a trigger row, scheduled or parked."""
        try:
            return bool(
                self.db.scalar(
                    select(func.count())
                    .select_from(RuleTrigger)
                    .where(self._key_filter(rule_id, user_id, course_id))
                )
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read trigger: {e}") from e

    def get_for_update(
        self, rule_id: int, user_id: int, course_id: int
    ) -> Optional[datetime]:
        """Read the trigger and lock its row until the transaction ends."""
        try:
            return self.db.scalar(
                select(RuleTrigger.next_fire_at)
                .where(self._key_filter(rule_id, user_id, course_id))
                .with_for_update()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to lock trigger: {e}") from e

    def upsert(
        self, rule_id: int, user_id: int, course_id: int, candidate: datetime
    ) -> bool:
        """
        Insert the trigger, or move it to ``candidate`` when that is later
        than the stored time or the tuple is parked. Returns True when the
        stored value changed.
        """
        candidate = to_naive_utc(candidate)
        now = naive_utc_now()
        try:
            stmt = conflict_insert(self.db, RuleTrigger)
            if stmt is not None:
                stmt = stmt.values(
                    rule_id=rule_id,
                    user_id=user_id,
                    course_id=course_id,
                    next_fire_at=candidate,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["rule_id", "user_id", "course_id"],
                    set_={
                        "next_fire_at": stmt.excluded.next_fire_at,
                        "updated_at": now,
                    },
                    where=or_(
                        RuleTrigger.__table__.c.next_fire_at.is_(None),
                        RuleTrigger.__table__.c.next_fire_at
                        < stmt.excluded.next_fire_at,
                    ),
                )
                return self.db.execute(stmt).rowcount > 0

            if self._advance(rule_id, user_id, course_id, candidate):
                return True
            if self.exists(rule_id, user_id, course_id):
                return False
            try:
                with self.db.begin_nested():
                    self.db.execute(
                        insert(RuleTrigger).values(
                            rule_id=rule_id,
                            user_id=user_id,
                            course_id=course_id,
                            next_fire_at=candidate,
                        )
                    )
                return True
            except IntegrityError:
                # Lost the insert race; the row exists now
                return self._advance(rule_id, user_id, course_id, candidate)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to upsert trigger: {e}") from e

    def _advance(
        self, rule_id: int, user_id: int, course_id: int, candidate: datetime
    ) -> bool:
        result = self.db.execute(
            update(RuleTrigger)
            .where(
                self._key_filter(rule_id, user_id, course_id),
                or_(
                    RuleTrigger.next_fire_at.is_(None),
                    RuleTrigger.next_fire_at < candidate,
                ),
            )
            .values(next_fire_at=candidate)
        )
        return result.rowcount > 0

    def park(self, rule_id: int, user_id: int, course_id: int) -> None:
        """
        Take the tuple off polling, keeping a row so it still counts as seen.
        Used when no elapsed time can change the outcome: an event-driven
        element deferred it, or its launches are used up.
        """
        now = naive_utc_now()
        try:
            stmt = conflict_insert(self.db, RuleTrigger)
            if stmt is not None:
                stmt = stmt.values(
                    rule_id=rule_id,
                    user_id=user_id,
                    course_id=course_id,
                    next_fire_at=None,
                    created_at=now,
                    updated_at=now,
                )
                self.db.execute(
                    stmt.on_conflict_do_update(
                        index_elements=["rule_id", "user_id", "course_id"],
                        set_={"next_fire_at": None, "updated_at": now},
                    )
                )
                return

            if self._clear(rule_id, user_id, course_id):
                return
            try:
                with self.db.begin_nested():
                    self.db.execute(
                        insert(RuleTrigger).values(
                            rule_id=rule_id,
                            user_id=user_id,
                            course_id=course_id,
                            next_fire_at=None,
                        )
                    )
            except IntegrityError:
                self._clear(rule_id, user_id, course_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to park trigger: {e}") from e

    def _clear(self, rule_id: int, user_id: int, course_id: int) -> bool:
        result = self.db.execute(
            update(RuleTrigger)
            .where(self._key_filter(rule_id, user_id, course_id))
            .values(next_fire_at=None)
        )
        return result.rowcount > 0

    def due(
        self, now: datetime, limit: Optional[int] = None, exclude_rules=None
    ) -> List[TupleKey]:
        """
        Tuples whose trigger time has been reached, soonest first.

        ``exclude_rules`` is an optional selectable of rule ids to leave out.
        """
        stmt = (
            select(RuleTrigger.rule_id, RuleTrigger.user_id, RuleTrigger.course_id)
            .where(RuleTrigger.next_fire_at <= to_naive_utc(now))
            .order_by(RuleTrigger.next_fire_at, RuleTrigger.id)
        )
        if exclude_rules is not None:
            stmt = stmt.where(RuleTrigger.rule_id.not_in(exclude_rules))
        if limit:
            stmt = stmt.limit(limit)
        try:
            return [TupleKey(*row) for row in self.db.execute(stmt).all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to select due triggers: {e}") from e

    def delete_by_rule(self, rule_id: int) -> int:
        try:
            result = self.db.execute(
                delete(RuleTrigger).where(RuleTrigger.rule_id == rule_id)
            )
            return result.rowcount
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete triggers: {e}") from e
