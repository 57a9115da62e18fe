from .activity_events import activity_completed_task, activity_updated_task

__all__ = [
    "activity_updated_task",
    "activity_completed_task",
]
