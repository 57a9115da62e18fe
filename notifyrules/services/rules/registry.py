from typing import Callable, Dict, List, Optional

from notifyrules.db.models import RuleAction, RuleCondition
from notifyrules.utils.errors import ConfigurationError
from notifyrules.utils.logging import get_logger
from .base import ActionPlugin, ConditionPlugin

logger = get_logger()

ConditionFactory = Callable[[int, Optional[str], Optional[int]], ConditionPlugin]
ActionFactory = Callable[[int, Optional[str], Optional[int]], ActionPlugin]


class PluginRegistry:
    """Maps plugin tags stored on rule records to plugin factories"""

    _conditions: Dict[str, ConditionFactory] = {}
    _actions: Dict[str, ActionFactory] = {}

    @classmethod
    def register_condition(cls, plugin_name: str, factory: ConditionFactory):
        """Register a factory for a condition tag"""
        cls._conditions[plugin_name] = factory
        logger.debug(f"Registered condition plugin: {plugin_name}")

    @classmethod
    def register_action(cls, plugin_name: str, factory: ActionFactory):
        """Register a factory for an action tag"""
        cls._actions[plugin_name] = factory
        logger.debug(f"Registered action plugin: {plugin_name}")

    @classmethod
    def create_condition(cls, record: RuleCondition) -> ConditionPlugin:
        """Instantiate the condition (or exception) stored in ``record``"""
        factory = cls._conditions.get(record.plugin_name)
        if factory is None:
            raise ConfigurationError(
                f"No condition plugin registered for: {record.plugin_name}"
            )
        return factory(record.id, record.parameters, record.cmid)

    @classmethod
    def create_action(cls, record: RuleAction) -> ActionPlugin:
        """Instantiate the action stored in ``record``"""
        factory = cls._actions.get(record.plugin_name)
        if factory is None:
            raise ConfigurationError(
                f"No action plugin registered for: {record.plugin_name}"
            )
        return factory(record.id, record.parameters, None)

    @classmethod
    def validate_condition(cls, plugin_name: str, parameters: str, cmid: Optional[int] = None):
        """Check a condition blob before it is stored"""
        factory = cls._conditions.get(plugin_name)
        if factory is None:
            raise ConfigurationError(f"No condition plugin registered for: {plugin_name}")
        factory(0, parameters, cmid)

    @classmethod
    def validate_action(cls, plugin_name: str, parameters: str):
        """Check an action blob before it is stored"""
        factory = cls._actions.get(plugin_name)
        if factory is None:
            raise ConfigurationError(f"No action plugin registered for: {plugin_name}")
        factory(0, parameters, None)

    @classmethod
    def list_registered_conditions(cls) -> List[str]:
        return list(cls._conditions.keys())

    @classmethod
    def list_registered_actions(cls) -> List[str]:
        return list(cls._actions.keys())

    @classmethod
    def is_registered(cls, plugin_name: str) -> bool:
        return plugin_name in cls._conditions or plugin_name in cls._actions
