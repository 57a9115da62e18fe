from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from notifyrules.utils.datetime_utils import to_naive_utc
from .cache_store import CacheStore


class EvaluationContext:
    """
    One evaluation request for a (rule, user, course) tuple.

    Plugins read from it; only the rule engine advances it (``enter_condition``
    and ``enter_exception``) while walking the ordered condition and exception
    lists. The only store a plugin may write to is ``cache``.
    """

    def __init__(
        self,
        rule_id: int,
        user_id: int,
        course_id: int,
        time_access: datetime,
        db_session: Session,
        cache: Optional[CacheStore] = None,
    ):
        self._rule_id = rule_id
        self._user_id = user_id
        self._course_id = course_id
        self._time_access = to_naive_utc(time_access)
        self._db = db_session
        self._cache = cache if cache is not None else CacheStore(db_session)
        self._complementary = False
        self._params: Dict[str, Any] = {}
        self._condition_trail: List[Any] = []
        self._exception_trail: List[Any] = []

    @property
    def rule_id(self) -> int:
        return self._rule_id

    @property
    def user_id(self) -> int:
        return self._user_id

    @property
    def course_id(self) -> int:
        return self._course_id

    @property
    def time_access(self) -> datetime:
        """The evaluation's notion of "now" (naive UTC)."""
        return self._time_access

    @property
    def complementary(self) -> bool:
        """True while an exception is being evaluated."""
        return self._complementary

    @property
    def params(self) -> Dict[str, Any]:
        """Parameters of the element currently being evaluated."""
        return dict(self._params)

    @property
    def condition_trail(self) -> Tuple[Any, ...]:
        """Conditions visited so far, in declaration order, current one last."""
        return tuple(self._condition_trail)

    @property
    def exception_trail(self) -> Tuple[Any, ...]:
        return tuple(self._exception_trail)

    @property
    def db(self) -> Session:
        """Session for reading host platform state."""
        return self._db

    @property
    def cache(self) -> CacheStore:
        return self._cache

    def enter_condition(self, condition) -> None:
        self._condition_trail.append(condition)
        self._params = condition.get_parameters()
        self._complementary = False

    def enter_exception(self, exception) -> None:
        self._exception_trail.append(exception)
        self._params = exception.get_parameters()
        self._complementary = True

    def __repr__(self) -> str:
        return (
            f"EvaluationContext(rule_id={self._rule_id}, user_id={self._user_id}, "
            f"course_id={self._course_id}, time_access={self._time_access.isoformat()})"
        )
