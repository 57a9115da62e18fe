from typing import List, Optional

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from notifyrules.db.models import RuleLaunch
from notifyrules.db.upsert import conflict_insert
from notifyrules.utils.datetime_utils import naive_utc_now
from notifyrules.utils.errors import StoreError
from .trigger_store import TupleKey


class LaunchLedger:
    """Fire counts per (rule, user, course), backing the max-fires cap."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def _key_filter(self, rule_id: int, user_id: int, course_id: int):
        return and_(
            RuleLaunch.rule_id == rule_id,
            RuleLaunch.user_id == user_id,
            RuleLaunch.course_id == course_id,
        )

    def get_fire_count(self, rule_id: int, user_id: int, course_id: int) -> int:
        try:
            count = self.db.scalar(
                select(RuleLaunch.fire_count).where(
                    self._key_filter(rule_id, user_id, course_id)
                )
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read launch count: {e}") from e
        return count or 0

    def has_capacity(
        self, rule_id: int, user_id: int, course_id: int, max_fires: int
    ) -> bool:
        return self.get_fire_count(rule_id, user_id, course_id) < max_fires

    def record_fire(
        self,
        rule_id: int,
        user_id: int,
        course_id: int,
        max_fires: Optional[int] = None,
    ) -> Optional[int]:
        """
        Count one launch and return the new fire count.

        With ``max_fires`` the increment only happens while the count is below
        the cap, in the same statement, and None is returned once it is reached.
        """
        now = naive_utc_now()
        key = self._key_filter(rule_id, user_id, course_id)
        try:
            stmt = conflict_insert(self.db, RuleLaunch)
            if stmt is not None:
                stmt = stmt.values(
                    rule_id=rule_id,
                    user_id=user_id,
                    course_id=course_id,
                    fire_count=1,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["rule_id", "user_id", "course_id"],
                    set_={
                        "fire_count": RuleLaunch.__table__.c.fire_count + 1,
                        "updated_at": now,
                    },
                    where=(
                        RuleLaunch.__table__.c.fire_count < max_fires
                        if max_fires is not None
                        else None
                    ),
                )
                changed = self.db.execute(stmt).rowcount > 0
            else:
                changed = self._increment(key, max_fires, now)
                if not changed and self.db.scalar(
                    select(func.count()).select_from(RuleLaunch).where(key)
                ) == 0:
                    try:
                        with self.db.begin_nested():
                            self.db.execute(
                                insert(RuleLaunch).values(
                                    rule_id=rule_id,
                                    user_id=user_id,
                                    course_id=course_id,
                                    fire_count=1,
                                )
                            )
                        changed = True
                    except IntegrityError:
                        changed = self._increment(key, max_fires, now)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to record launch: {e}") from e

        if not changed:
            return None
        return self.get_fire_count(rule_id, user_id, course_id)

    def _increment(self, key, max_fires: Optional[int], now) -> bool:
        stmt = update(RuleLaunch).where(key)
        if max_fires is not None:
            stmt = stmt.where(RuleLaunch.fire_count < max_fires)
        result = self.db.execute(
            stmt.values(fire_count=RuleLaunch.fire_count + 1, updated_at=now)
        )
        return result.rowcount > 0

    def keys_with_count_between(
        self, rule_id: int, minimum: int, below: int
    ) -> List[TupleKey]:
        """Tuples of the rule whose fire count is in ``[minimum, below)``"""
        try:
            rows = self.db.execute(
                select(RuleLaunch.rule_id, RuleLaunch.user_id, RuleLaunch.course_id)
                .where(
                    RuleLaunch.rule_id == rule_id,
                    RuleLaunch.fire_count >= minimum,
                    RuleLaunch.fire_count < below,
                )
                .order_by(RuleLaunch.id)
            ).all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read launches: {e}") from e
        return [TupleKey(*row) for row in rows]

    def total_fires(self, rule_id: int) -> int:
        try:
            return self.db.scalar(
                select(func.coalesce(func.sum(RuleLaunch.fire_count), 0)).where(
                    RuleLaunch.rule_id == rule_id
                )
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to sum launches: {e}") from e

    def delete_by_rule(self, rule_id: int) -> int:
        try:
            result = self.db.execute(
                delete(RuleLaunch).where(RuleLaunch.rule_id == rule_id)
            )
            return result.rowcount
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete launches: {e}") from e
