import pytest
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from notifyrules.db.models import (
    ConditionCache,
    ContextLevel,
    Course,
    Rule,
    RuleCondition,
    RuleContext,
    RuleLaunch,
    RuleStatus,
    RuleTrigger,
    RuleType,
)
from notifyrules.services.rules import (
    GENERIC_USER_ID,
    CacheStore,
    LaunchLedger,
    RuleService,
    TriggerStore,
)
from notifyrules.utils.errors import NotFoundError, RuleValidationError


def count(db_session: Session, model, **filters) -> int:
    stmt = select(func.count()).select_from(model)
    for column, value in filters.items():
        stmt = stmt.where(getattr(model, column) == value)
    return db_session.scalar(stmt)


class TestRuleCreation:
    """Creating rules and validating their schedule."""

    def test_create_rule_assigns_course_context(
        self, rule_service: RuleService, teacher, sample_course
    ):
        rule = rule_service.create_rule(
            name="Welcome", created_by=teacher.id, course_id=sample_course.id
        )

        assert rule.id is not None
        assert rule.status == RuleStatus.ACTIVE
        assert rule.rule_type == RuleType.RULE
        assert rule.max_fires == 1
        assert [(c.context_level, c.object_id) for c in rule.contexts] == [
            (ContextLevel.COURSE, sample_course.id)
        ]

    def test_default_runtime_is_one_day(self, rule_service, teacher, sample_course):
        rule = rule_service.create_rule(
            name="Daily", created_by=teacher.id, course_id=sample_course.id
        )

        assert rule.re_arm_interval == 86400

    def test_runtime_mapping_is_converted(self, rule_service, teacher, sample_course):
        rule = rule_service.create_rule(
            name="Hourly-ish",
            created_by=teacher.id,
            course_id=sample_course.id,
            runtime={"days": "", "hours": "2", "minutes": 30},
        )

        assert rule.re_arm_interval == 2 * 3600 + 30 * 60

    def test_blank_runtime_falls_back_to_minimum(self, rule_service, teacher, sample_course):
        rule = rule_service.create_rule(
            name="Blank",
            created_by=teacher.id,
            course_id=sample_course.id,
            runtime={"days": "", "hours": None, "minutes": "0"},
        )

        assert rule.re_arm_interval == 86400

    def test_zero_max_fires_is_rejected(self, rule_service, teacher, sample_course):
        with pytest.raises(RuleValidationError):
            rule_service.create_rule(
                name="Never", created_by=teacher.id, course_id=sample_course.id, max_fires=0
            )

    def test_negative_interval_is_rejected(self, rule_service, teacher, sample_course):
        with pytest.raises(RuleValidationError):
            rule_service.create_rule(
                name="Backwards",
                created_by=teacher.id,
                course_id=sample_course.id,
                re_arm_interval=-1,
            )


class TestRuleElements:
    """Conditions, exceptions and actions are validated before they are stored."""

    @pytest.fixture
    def rule(self, rule_service, teacher, sample_course):
        return rule_service.create_rule(
            name="Elements", created_by=teacher.id, course_id=sample_course.id
        )

    def test_positions_follow_insertion_order(self, rule_service, rule):
        first = rule_service.add_condition(rule.id, "dateafter", {"date": "2025-01-01T00:00:00"})
        second = rule_service.add_condition(rule.id, "weekend", {})
        exception = rule_service.add_exception(rule.id, "weekend", {})

        assert (first.position, second.position) == (0, 1)
        assert exception.position == 0
        assert exception.complementary is True

    def test_datetime_parameters_are_serialized(self, rule_service, rule):
        condition = rule_service.add_condition(
            rule.id, "dateafter", {"date": datetime(2025, 3, 1, 8, 0)}
        )

        assert "2025-03-01T08:00:00" in condition.parameters

    def test_unknown_plugin_is_rejected(self, rule_service, rule):
        with pytest.raises(RuleValidationError, match="nosuchplugin"):
            rule_service.add_condition(rule.id, "nosuchplugin", {})

    def test_invalid_parameters_are_rejected(self, rule_service, rule):
        with pytest.raises(RuleValidationError):
            rule_service.add_condition(rule.id, "dateafter", {"date": "next tuesday"})

    def test_module_condition_requires_cmid(self, rule_service, rule):
        with pytest.raises(RuleValidationError):
            rule_service.add_condition(rule.id, "activityopen", {"time": 60})

    def test_message_requires_title(self, rule_service, rule):
        with pytest.raises(RuleValidationError):
            rule_service.add_action(rule.id, "messageagent", {"title": ""})

    def test_assign_context_is_idempotent(self, rule_service, db_session, rule):
        rule_service.assign_context(rule.id, ContextLevel.CATEGORY, 7)
        rule_service.assign_context(rule.id, ContextLevel.CATEGORY, 7)

        assert count(db_session, RuleContext, rule_id=rule.id) == 2


class TestRuleLookup:
    """Finding rules by id, course and course module."""

    def test_get_rule_missing_raises(self, rule_service):
        with pytest.raises(NotFoundError):
            rule_service.get_rule(12345)

    def test_rules_for_course_include_category_rules(
        self, rule_service, db_session, teacher, sample_course
    ):
        direct = rule_service.create_rule(
            name="Direct", created_by=teacher.id, course_id=sample_course.id
        )
        other = Course(category_id=99, fullname="Pottery")
        db_session.add(other)
        db_session.commit()
        by_category = rule_service.create_rule(
            name="Category", created_by=teacher.id, course_id=other.id
        )
        rule_service.assign_context(by_category.id, ContextLevel.CATEGORY, 7)
        unrelated = rule_service.create_rule(
            name="Unrelated", created_by=teacher.id, course_id=other.id
        )

        ids = [rule.id for rule in rule_service.get_rules_for_course(sample_course.id)]

        assert ids == [direct.id, by_category.id]
        assert unrelated.id not in ids

    def test_conditions_by_cm_only_for_schedulable_rules(
        self, rule_service, teacher, sample_course, sample_module
    ):
        active = rule_service.create_rule(
            name="Active", created_by=teacher.id, course_id=sample_course.id
        )
        paused = rule_service.create_rule(
            name="Paused", created_by=teacher.id, course_id=sample_course.id
        )
        wanted = rule_service.add_condition(active.id, "activityopen", {}, cmid=sample_module.id)
        rule_service.add_condition(paused.id, "activityopen", {}, cmid=sample_module.id)
        rule_service.add_condition(active.id, "activitycompleted", {}, cmid=sample_module.id)
        rule_service.pause_rule(paused.id)

        rows = rule_service.get_conditions_by_cm("activityopen", sample_course.id, sample_module.id)

        assert [row.id for row in rows] == [wanted.id]


class TestTemplates:
    """Cloning a rule into a template."""

    def test_clone_copies_elements_and_marks_source(
        self, rule_service, teacher, sample_course
    ):
        source = rule_service.create_rule(
            name="Source",
            created_by=teacher.id,
            course_id=sample_course.id,
            max_fires=3,
            re_arm_interval=3600,
        )
        rule_service.add_condition(source.id, "dateafter", {"date": "2025-01-01T00:00:00"})
        rule_service.add_exception(source.id, "weekend", {})
        rule_service.add_action(source.id, "messageagent", {"title": "Hello"})

        template = rule_service.clone_as_template(source.id, created_by=teacher.id)

        assert template.id != source.id
        assert template.rule_type == RuleType.TEMPLATE
        assert (template.max_fires, template.re_arm_interval) == (3, 3600)
        assert sorted((c.plugin_name, c.complementary) for c in template.conditions) == [
            ("dateafter", False),
            ("weekend", True),
        ]
        assert [a.plugin_name for a in template.actions] == ["messageagent"]
        assert rule_service.get_rule(source.id).default_rule is True


class TestRuleDeletion:
    """Deleting a rule leaves no scheduling state behind."""

    def test_delete_sweeps_triggers_launches_and_cache(
        self, rule_service, db_session, teacher, sample_course, sample_module, student
    ):
        rule = rule_service.create_rule(
            name="Doomed", created_by=teacher.id, course_id=sample_course.id
        )
        condition = rule_service.add_condition(rule.id, "activityopen", {}, cmid=sample_module.id)
        keeper = rule_service.create_rule(
            name="Keeper", created_by=teacher.id, course_id=sample_course.id
        )

        TriggerStore(db_session).upsert(rule.id, student.id, sample_course.id, datetime(2025, 1, 1))
        TriggerStore(db_session).upsert(keeper.id, student.id, sample_course.id, datetime(2025, 1, 1))
        LaunchLedger(db_session).record_fire(rule.id, student.id, sample_course.id)
        CacheStore(db_session).upsert(
            GENERIC_USER_ID,
            sample_course.id,
            "activityopen",
            condition.id,
            datetime(2025, 1, 10),
            update_if_exists=False,
        )
        db_session.commit()

        rule_service.delete_rule(rule.id)

        assert count(db_session, Rule, id=rule.id) == 0
        assert count(db_session, RuleCondition, rule_id=rule.id) == 0
        assert count(db_session, RuleContext, rule_id=rule.id) == 0
        assert count(db_session, RuleTrigger, rule_id=rule.id) == 0
        assert count(db_session, RuleLaunch, rule_id=rule.id) == 0
        assert count(db_session, ConditionCache, condition_id=condition.id) == 0
        assert count(db_session, RuleTrigger, rule_id=keeper.id) == 1


class TestRuleStatus:
    """Scheduling status reported for a rule."""

    def test_status_counts_triggers_and_launches(
        self, rule_service, db_session, teacher, sample_course
    ):
        rule = rule_service.create_rule(
            name="Status", created_by=teacher.id, course_id=sample_course.id, max_fires=5
        )
        TriggerStore(db_session).upsert(rule.id, 1, sample_course.id, datetime(2025, 1, 3))
        TriggerStore(db_session).upsert(rule.id, 2, sample_course.id, datetime(2025, 1, 2))
        TriggerStore(db_session).park(rule.id, 3, sample_course.id)
        LaunchLedger(db_session).record_fire(rule.id, 1, sample_course.id)
        LaunchLedger(db_session).record_fire(rule.id, 1, sample_course.id)
        db_session.commit()

        status = rule_service.get_rule_status(rule.id)

        assert status.pending_triggers == 2
        assert status.parked_triggers == 1
        assert status.next_fire_at == datetime(2025, 1, 2)
        assert status.total_fires == 2
        assert status.max_fires == 5


class TestRuleUpdate:
    """Editing the launch cap of a rule."""

    def test_raising_max_fires_reschedules_capped_tuples(
        self, rule_service, db_session, teacher, sample_course
    ):
        rule = rule_service.create_rule(
            name="Capped", created_by=teacher.id, course_id=sample_course.id, max_fires=1
        )
        ledger = LaunchLedger(db_session)
        triggers = TriggerStore(db_session)
        ledger.record_fire(rule.id, 1, sample_course.id, max_fires=1)
        triggers.park(rule.id, 1, sample_course.id)
        triggers.park(rule.id, 2, sample_course.id)
        db_session.commit()

        rule_service.update_rule(rule.id, max_fires=2, now=datetime(2025, 3, 1))

        assert triggers.get(rule.id, 1, sample_course.id) == datetime(2025, 3, 1)
        # Never fired; still waiting on its own event
        assert triggers.get(rule.id, 2, sample_course.id) is None

    def test_lowering_max_fires_leaves_triggers(
        self, rule_service, db_session, teacher, sample_course
    ):
        rule = rule_service.create_rule(
            name="Capped", created_by=teacher.id, course_id=sample_course.id, max_fires=3
        )
        LaunchLedger(db_session).record_fire(rule.id, 1, sample_course.id)
        TriggerStore(db_session).park(rule.id, 1, sample_course.id)
        db_session.commit()

        rule_service.update_rule(rule.id, max_fires=2, now=datetime(2025, 3, 1))

        assert TriggerStore(db_session).get(rule.id, 1, sample_course.id) is None
