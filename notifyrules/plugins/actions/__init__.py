from .message import MessageAction, create_message_action

__all__ = ["MessageAction", "create_message_action"]
