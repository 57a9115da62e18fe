from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from notifyrules.db.models import ConditionCache
from notifyrules.db.upsert import conflict_insert
from notifyrules.utils.datetime_utils import naive_utc_now, to_naive_utc
from notifyrules.utils.errors import StoreError

# Entries that hold for every user in a course are stored under this id
GENERIC_USER_ID = 0


class CacheStore:
    """
    Plugin-owned memo of derived timestamps per (user, course, plugin, condition).

    The calling plugin decides on every write whether an existing value may be
    overwritten; values computed once and already used for scheduling must not
    shift under the schedule.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def _key_filter(
        self, user_id: int, course_id: int, plugin_name: str, condition_id: int
    ):
        return and_(
            ConditionCache.user_id == user_id,
            ConditionCache.course_id == course_id,
            ConditionCache.plugin_name == plugin_name,
            ConditionCache.condition_id == condition_id,
        )

    def get(
        self, user_id: int, course_id: int, plugin_name: str, condition_id: int
    ) -> Optional[datetime]:
        try:
            return self.db.scalar(
                select(ConditionCache.value).where(
                    self._key_filter(user_id, course_id, plugin_name, condition_id)
                )
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read cache: {e}") from e

    def upsert(
        self,
        user_id: int,
        course_id: int,
        plugin_name: str,
        condition_id: int,
        value: datetime,
        update_if_exists: bool,
    ) -> None:
        value = to_naive_utc(value)
        now = naive_utc_now()
        try:
            stmt = conflict_insert(self.db, ConditionCache)
            if stmt is not None:
                stmt = stmt.values(
                    user_id=user_id,
                    course_id=course_id,
                    plugin_name=plugin_name,
                    condition_id=condition_id,
                    value=value,
                    created_at=now,
                    updated_at=now,
                )
                index_elements = ["user_id", "course_id", "plugin_name", "condition_id"]
                if update_if_exists:
                    stmt = stmt.on_conflict_do_update(
                        index_elements=index_elements,
                        set_={"value": stmt.excluded.value, "updated_at": now},
                    )
                else:
                    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
                self.db.execute(stmt)
                return

            key = self._key_filter(user_id, course_id, plugin_name, condition_id)
            if self.get(user_id, course_id, plugin_name, condition_id) is not None:
                if update_if_exists:
                    self.db.execute(update(ConditionCache).where(key).values(value=value))
                return
            try:
                with self.db.begin_nested():
                    self.db.execute(
                        insert(ConditionCache).values(
                            user_id=user_id,
                            course_id=course_id,
                            plugin_name=plugin_name,
                            condition_id=condition_id,
                            value=value,
                        )
                    )
            except IntegrityError:
                if update_if_exists:
                    self.db.execute(update(ConditionCache).where(key).values(value=value))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to upsert cache: {e}") from e

    def delete_by_conditions(self, condition_ids: Iterable[int]) -> int:
        condition_ids = list(condition_ids)
        if not condition_ids:
            return 0
        try:
            result = self.db.execute(
                delete(ConditionCache).where(
                    ConditionCache.condition_id.in_(condition_ids)
                )
            )
            return result.rowcount
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete cache entries: {e}") from e
