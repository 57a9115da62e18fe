from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError

from notifyrules.utils.errors import ConfigurationError
from .context import EvaluationContext


class NoParameters(BaseModel):
    model_config = ConfigDict(extra="ignore")


class NotificationPlugin(ABC):
    """Shared loading of a plugin instance from its stored record"""

    plugin_name: ClassVar[str] = ""
    Parameters: ClassVar[Type[BaseModel]] = NoParameters
    # Plugins bound to a course module refuse to load without one
    requires_cmid: ClassVar[bool] = False

    def __init__(self, record_id: int, raw_parameters: Optional[str], cmid: Optional[int] = None):
        self.id = record_id
        self.cmid = cmid
        self.raw_parameters = raw_parameters or "{}"
        if self.requires_cmid and cmid is None:
            raise ConfigurationError(
                f"{self.plugin_name} #{record_id} is not bound to a course module"
            )
        self.params = self.parse_parameters(self.raw_parameters, record_id)

    @classmethod
    def parse_parameters(cls, raw_parameters: str, record_id: Optional[int] = None) -> BaseModel:
        """Validate a stored JSON blob against the plugin's parameter model"""
        try:
            return cls.Parameters.model_validate_json(raw_parameters)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(loc) for loc in error['loc']) or 'parameters'}: {error['msg']}"
                for error in e.errors()
            )
            raise ConfigurationError(
                f"Invalid parameters for {cls.plugin_name} #{record_id}: {details}"
            ) from e

    def get_parameters(self) -> Dict[str, Any]:
        return self.params.model_dump()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id}, cmid={self.cmid})"


class ConditionPlugin(NotificationPlugin):
    """
    A predicate evaluated for one user in one course.

    The same plugin serves as a condition or as an exception; ``ctx.complementary``
    tells which role it currently plays.
    """

    @abstractmethod
    def evaluate(self, ctx: EvaluationContext) -> bool:
        """Whether the predicate holds right now."""

    @abstractmethod
    def estimate_next_time(self, ctx: EvaluationContext) -> Optional[datetime]:
        """
        Earliest time at which the current outcome may change.

        Event-driven plugins return None: no timer is scheduled and the
        tuple is re-evaluated when the event arrives.
        """


class ActionPlugin(NotificationPlugin):
    """A side effect run, in declaration order, after a rule fires."""

    @abstractmethod
    def execute(self, ctx: EvaluationContext) -> None:
        """Raise ActionExecutionError on failure."""
