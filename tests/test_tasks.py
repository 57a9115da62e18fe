import pytest
from datetime import datetime
from unittest.mock import AsyncMock, Mock, patch

from notifyrules.db.models import ActivityCompletion
from notifyrules.services.rules import (
    GENERIC_USER_ID,
    CacheStore,
    LaunchLedger,
    TriggerStore,
    TupleKey,
)
from notifyrules.tasks.background.activity_events import (
    _async_activity_completed,
    _async_activity_updated,
)
from notifyrules.tasks.cron.rule_trigger_processor import _async_rule_trigger_processor


@pytest.fixture
def quiz_rule(rule_service, teacher, sample_course, sample_module, enrolled_student):
    """Reminds students one hour after the quiz opens."""
    rule = rule_service.create_rule(
        name="Quiz reminder", created_by=teacher.id, course_id=sample_course.id
    )
    condition = rule_service.add_condition(
        rule.id, "activityopen", {"time": 3600}, cmid=sample_module.id
    )
    return rule, condition


class TestActivityUpdatedTask:
    """Moving a module's open time moves the affected triggers."""

    @pytest.mark.asyncio
    async def test_refreshes_cache_and_moves_trigger(
        self, scheduler, session_factory, db_session, quiz_rule, sample_course, sample_module, enrolled_student
    ):
        rule, condition = quiz_rule
        key = TupleKey(rule.id, enrolled_student.id, sample_course.id)
        scheduler.evaluate_tuple(*key, datetime(2025, 1, 5))
        assert TriggerStore(db_session).get(*key) == datetime(2025, 1, 10, 10, 0)

        sample_module.time_open = datetime(2025, 1, 15, 9, 0)
        db_session.commit()

        result = await _async_activity_updated(
            "test-request", sample_course.id, sample_module.id, session_factory=session_factory
        )

        assert result["success"] is True
        assert result["updated_count"] == 1
        assert TriggerStore(db_session).get(*key) == datetime(2025, 1, 15, 10, 0)
        assert CacheStore(db_session).get(
            GENERIC_USER_ID, sample_course.id, "activityopen", condition.id
        ) == datetime(2025, 1, 15, 9, 0)

    @pytest.mark.asyncio
    async def test_skips_users_without_launches_left(
        self, session_factory, db_session, quiz_rule, sample_course, sample_module, enrolled_student
    ):
        rule, _ = quiz_rule
        key = TupleKey(rule.id, enrolled_student.id, sample_course.id)
        LaunchLedger(db_session).record_fire(*key)
        db_session.commit()

        result = await _async_activity_updated(
            "test-request", sample_course.id, sample_module.id, session_factory=session_factory
        )

        assert result["success"] is True
        assert result["updated_count"] == 0
        assert TriggerStore(db_session).get(*key) is None


class TestActivityCompletedTask:
    """Completion events evaluate the matching rules for the user."""

    @pytest.mark.asyncio
    async def test_evaluates_completion_rules(
        self, session_factory, db_session, rule_service, teacher, sample_course, sample_module, enrolled_student
    ):
        rule = rule_service.create_rule(
            name="Completed", created_by=teacher.id, course_id=sample_course.id
        )
        rule_service.add_condition(rule.id, "activitycompleted", {}, cmid=sample_module.id)
        db_session.add(
            ActivityCompletion(
                cmid=sample_module.id,
                user_id=enrolled_student.id,
                completed_at=datetime(2025, 1, 12, 14, 0),
            )
        )
        db_session.commit()

        result = await _async_activity_completed(
            "test-request",
            enrolled_student.id,
            sample_module.id,
            session_factory=session_factory,
            current_datetime="2025-01-12T14:00:00",
        )

        assert result["success"] is True
        assert [r["outcome"] for r in result["results"]] == ["fired"]
        assert LaunchLedger(db_session).get_fire_count(
            rule.id, enrolled_student.id, sample_course.id
        ) == 1

    @pytest.mark.asyncio
    async def test_unknown_module(self, session_factory):
        result = await _async_activity_completed(
            "test-request", 1, 4242, session_factory=session_factory
        )

        assert result["success"] is False
        assert "4242" in result["error"]


class TestRuleTriggerProcessorTask:
    """The beat task delegates to the scheduler and reports a summary."""

    @pytest.mark.asyncio
    @patch("notifyrules.tasks.cron.rule_trigger_processor.RuleScheduler")
    async def test_reports_outcome_summary(self, mock_scheduler_class):
        mock_scheduler = Mock()
        mock_scheduler.evaluate_due = AsyncMock(return_value=[Mock(), Mock()])
        mock_scheduler.summarize.return_value = {"fired": 1, "deferred": 1}
        mock_scheduler_class.return_value = mock_scheduler

        result = await _async_rule_trigger_processor(
            "rule_trigger_processor_cron", current_datetime="2025-01-01T00:00:00"
        )

        assert result["success"] is True
        assert result["evaluated_count"] == 2
        assert result["outcomes"] == {"fired": 1, "deferred": 1}
        mock_scheduler.evaluate_due.assert_awaited_once_with(datetime(2025, 1, 1))

    @pytest.mark.asyncio
    @patch("notifyrules.tasks.cron.rule_trigger_processor.RuleScheduler")
    async def test_reports_failure(self, mock_scheduler_class):
        mock_scheduler = Mock()
        mock_scheduler.evaluate_due = AsyncMock(side_effect=RuntimeError("database unreachable"))
        mock_scheduler_class.return_value = mock_scheduler

        result = await _async_rule_trigger_processor("rule_trigger_processor_cron")

        assert result["success"] is False
        assert result["error"] == "database unreachable"
