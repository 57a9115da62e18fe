from notifyrules.services.rules import PluginRegistry
from .actions import MessageAction, create_message_action
from .conditions import (
    ActivityCompletedCondition,
    ActivityOpenCondition,
    DateAfterCondition,
    WeekendCondition,
    create_activity_completed_condition,
    create_activity_open_condition,
    create_date_after_condition,
    create_weekend_condition,
)


def register_builtin_plugins():
    """Register the bundled condition and action plugins"""
    PluginRegistry.register_condition(
        DateAfterCondition.plugin_name, create_date_after_condition
    )
    PluginRegistry.register_condition(
        WeekendCondition.plugin_name, create_weekend_condition
    )
    PluginRegistry.register_condition(
        ActivityOpenCondition.plugin_name, create_activity_open_condition
    )
    PluginRegistry.register_condition(
        ActivityCompletedCondition.plugin_name, create_activity_completed_condition
    )
    PluginRegistry.register_action(MessageAction.plugin_name, create_message_action)


register_builtin_plugins()

__all__ = [
    "ActivityCompletedCondition",
    "ActivityOpenCondition",
    "DateAfterCondition",
    "MessageAction",
    "WeekendCondition",
    "register_builtin_plugins",
]
