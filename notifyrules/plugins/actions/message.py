from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from notifyrules.db.models import Course, Rule, RuleMessage, User
from notifyrules.services.rules import ActionPlugin, EvaluationContext
from notifyrules.utils.errors import ActionExecutionError
from notifyrules.utils.placeholders import replace_placeholders


class MessageAction(ActionPlugin):
    """Render the rule's message for the user and record it for delivery"""

    plugin_name = "messageagent"

    class Parameters(BaseModel):
        title: str = Field(min_length=1)
        message: str = ""

    def execute(self, ctx: EvaluationContext) -> None:
        user = ctx.db.get(User, ctx.user_id)
        if user is None:
            raise ActionExecutionError(f"User not found: {ctx.user_id}")
        course = ctx.db.get(Course, ctx.course_id)
        rule = ctx.db.get(Rule, ctx.rule_id)
        teacher = ctx.db.get(User, rule.created_by) if rule is not None else None

        def render(template: str) -> str:
            return replace_placeholders(
                template, user=user, course=course, teacher=teacher, now=ctx.time_access
            )

        try:
            ctx.db.add(
                RuleMessage(
                    rule_id=ctx.rule_id,
                    user_id=ctx.user_id,
                    course_id=ctx.course_id,
                    subject=render(self.params.title),
                    body=render(self.params.message),
                )
            )
            ctx.db.flush()
        except SQLAlchemyError as e:
            raise ActionExecutionError(f"Failed to store message: {e}") from e


def create_message_action(
    record_id: int, parameters: Optional[str], cmid: Optional[int] = None
) -> MessageAction:
    return MessageAction(record_id, parameters, cmid)
