import json
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from notifyrules.config.settings import settings
from notifyrules.db.models import (
    ContextLevel,
    Course,
    CourseEnrolment,
    Rule,
    RuleAction,
    RuleCondition,
    RuleContext,
    RuleHealth,
    RuleStatus,
    RuleTrigger,
    RuleType,
)
from notifyrules.schemas.rule_schemas import RuleStatusResponse
from notifyrules.utils.errors import (
    ConfigurationError,
    NotFoundError,
    RuleValidationError,
    StoreError,
)
from notifyrules.utils.datetime_utils import naive_utc_now, to_naive_utc
from notifyrules.utils.logging import get_logger
from notifyrules.utils.time_format import to_human_format, to_seconds_format
from .cache_store import CacheStore
from .launch_ledger import LaunchLedger
from .registry import PluginRegistry
from .trigger_store import TriggerStore

logger = get_logger()

MINIMUM_EXECUTION = 1


def dump_parameters(parameters: Dict[str, Any]) -> str:
    """Serialize plugin parameters, writing dates as ISO 8601"""

    def default(value):
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return str(value)

    return json.dumps(parameters, default=default)


class RuleService:
    """Authoring and lookup of rules and their scheduling state"""

    def __init__(self, db_session: Session):
        self.db = db_session

    # Lookup

    def get_rule(self, rule_id: int) -> Rule:
        rule = self.db.scalar(
            select(Rule)
            .options(
                selectinload(Rule.conditions),
                selectinload(Rule.actions),
                selectinload(Rule.contexts),
            )
            .where(Rule.id == rule_id)
        )
        if rule is None:
            raise NotFoundError(f"Rule not found: {rule_id}")
        return rule

    def get_rules_for_course(self, course_id: int) -> List[Rule]:
        """Rules assigned to the course directly or through its category"""
        category_id = self.db.scalar(
            select(Course.category_id).where(Course.id == course_id)
        )
        scope = and_(
            RuleContext.context_level == ContextLevel.COURSE,
            RuleContext.object_id == course_id,
        )
        if category_id is not None:
            scope = or_(
                scope,
                and_(
                    RuleContext.context_level == ContextLevel.CATEGORY,
                    RuleContext.object_id == category_id,
                ),
            )
        return list(
            self.db.scalars(
                select(Rule)
                .join(RuleContext, RuleContext.rule_id == Rule.id)
                .where(scope)
                .distinct()
                .order_by(Rule.id)
            ).all()
        )

    def get_course_ids_for_rule(self, rule: Rule) -> List[int]:
        """Expand a rule's course and category contexts into course ids"""
        course_ids = {
            ctx.object_id
            for ctx in rule.contexts
            if ctx.context_level == ContextLevel.COURSE
        }
        category_ids = [
            ctx.object_id
            for ctx in rule.contexts
            if ctx.context_level == ContextLevel.CATEGORY
        ]
        if category_ids:
            course_ids.update(
                self.db.scalars(
                    select(Course.id).where(Course.category_id.in_(category_ids))
                ).all()
            )
        return sorted(course_ids)

    def get_enrolled_user_ids(self, course_id: int) -> List[int]:
        return list(
            self.db.scalars(
                select(CourseEnrolment.user_id)
                .where(
                    CourseEnrolment.course_id == course_id,
                    CourseEnrolment.is_active.is_(True),
                )
                .order_by(CourseEnrolment.user_id)
            ).all()
        )

    def get_conditions_by_cm(
        self, plugin_name: str, course_id: int, cmid: int
    ) -> List[RuleCondition]:
        """Conditions of a plugin bound to a course module, on schedulable rules in scope"""
        rule_ids = [
            rule.id
            for rule in self.get_rules_for_course(course_id)
            if rule.status == RuleStatus.ACTIVE and rule.rule_type == RuleType.RULE
        ]
        if not rule_ids:
            return []
        return list(
            self.db.scalars(
                select(RuleCondition)
                .options(selectinload(RuleCondition.rule))
                .where(
                    RuleCondition.rule_id.in_(rule_ids),
                    RuleCondition.plugin_name == plugin_name,
                    RuleCondition.cmid == cmid,
                )
                .order_by(RuleCondition.id)
            ).all()
        )

    # Authoring

    @staticmethod
    def resolve_runtime(
        re_arm_interval: Optional[int] = None,
        runtime: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Seconds between launches, from an explicit value or a days/hours/minutes
        mapping. A blank mapping falls back to the minimum runtime.
        """
        if re_arm_interval is not None:
            return re_arm_interval
        if runtime:
            seconds = to_seconds_format(runtime)
            if seconds > 0:
                return seconds
        return settings.RULE_MINIMUM_RUNTIME_SECONDS

    @staticmethod
    def validate_schedule(max_fires: int, re_arm_interval: int) -> None:
        if max_fires < MINIMUM_EXECUTION:
            raise RuleValidationError(
                f"max_fires must be at least {MINIMUM_EXECUTION}, got {max_fires}"
            )
        if re_arm_interval < 0:
            raise RuleValidationError(
                f"re_arm_interval must not be negative, got {re_arm_interval}"
            )

    def create_rule(
        self,
        name: str,
        created_by: int,
        course_id: int,
        max_fires: int = MINIMUM_EXECUTION,
        re_arm_interval: Optional[int] = None,
        runtime: Optional[Mapping[str, Any]] = None,
        rule_type: RuleType = RuleType.RULE,
        description: Optional[str] = None,
        shared: bool = False,
    ) -> Rule:
        """Create a rule assigned to its default course context"""
        interval = self.resolve_runtime(re_arm_interval, runtime)
        self.validate_schedule(max_fires, interval)

        rule = Rule(
            name=name,
            description=description,
            created_by=created_by,
            rule_type=rule_type,
            shared=shared,
            max_fires=max_fires,
            re_arm_interval=interval,
        )
        rule.contexts.append(
            RuleContext(context_level=ContextLevel.COURSE, object_id=course_id)
        )
        self.db.add(rule)
        self._commit("create rule")
        logger.info(f"Created rule {rule.id} '{name}' in course {course_id}")
        return rule

    def update_rule(
        self,
        rule_id: int,
        name: Optional[str] = None,
        max_fires: Optional[int] = None,
        re_arm_interval: Optional[int] = None,
        runtime: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Rule:
        """
        Edit a rule. Editing clears any configuration error flag, and raising
        ``max_fires`` schedules the tuples that had used up their launches.
        """
        rule = self.get_rule(rule_id)
        old_max = rule.max_fires
        new_max = max_fires if max_fires is not None else rule.max_fires
        new_interval = (
            self.resolve_runtime(re_arm_interval, runtime)
            if re_arm_interval is not None or runtime is not None
            else rule.re_arm_interval
        )
        self.validate_schedule(new_max, new_interval)

        if name is not None:
            rule.name = name
        rule.max_fires = new_max
        rule.re_arm_interval = new_interval
        rule.health = RuleHealth.OK
        rule.last_error = None

        reopened = 0
        if new_max > old_max:
            triggers = TriggerStore(self.db)
            now = to_naive_utc(now) if now is not None else naive_utc_now()
            try:
                for key in LaunchLedger(self.db).keys_with_count_between(
                    rule_id, old_max, new_max
                ):
                    triggers.upsert(*key, now)
                    reopened += 1
            except StoreError:
                self.db.rollback()
                raise
        self._commit("update rule")
        logger.info(f"Updated rule {rule_id}, {reopened} capped tuples rescheduled")
        return rule

    def _next_position(self, rule: Rule, complementary: Optional[bool]) -> int:
        if complementary is None:
            rows = rule.actions
        else:
            rows = [c for c in rule.conditions if c.complementary == complementary]
        return max((row.position for row in rows), default=-1) + 1

    def _add_condition_row(
        self,
        rule_id: int,
        plugin_name: str,
        parameters: Dict[str, Any],
        complementary: bool,
        cmid: Optional[int],
    ) -> RuleCondition:
        rule = self.get_rule(rule_id)
        raw = dump_parameters(parameters)
        try:
            PluginRegistry.validate_condition(plugin_name, raw, cmid)
        except ConfigurationError as e:
            raise RuleValidationError(e.message) from e

        row = RuleCondition(
            plugin_name=plugin_name,
            parameters=raw,
            complementary=complementary,
            position=self._next_position(rule, complementary),
            cmid=cmid,
        )
        rule.conditions.append(row)
        self._commit("add condition")
        return row

    def add_condition(
        self,
        rule_id: int,
        plugin_name: str,
        parameters: Dict[str, Any],
        cmid: Optional[int] = None,
    ) -> RuleCondition:
        return self._add_condition_row(rule_id, plugin_name, parameters, False, cmid)

    def add_exception(
        self,
        rule_id: int,
        plugin_name: str,
        parameters: Dict[str, Any],
        cmid: Optional[int] = None,
    ) -> RuleCondition:
        return self._add_condition_row(rule_id, plugin_name, parameters, True, cmid)

    def add_action(
        self, rule_id: int, plugin_name: str, parameters: Dict[str, Any]
    ) -> RuleAction:
        rule = self.get_rule(rule_id)
        raw = dump_parameters(parameters)
        try:
            PluginRegistry.validate_action(plugin_name, raw)
        except ConfigurationError as e:
            raise RuleValidationError(e.message) from e

        row = RuleAction(
            plugin_name=plugin_name,
            parameters=raw,
            position=self._next_position(rule, None),
        )
        rule.actions.append(row)
        self._commit("add action")
        return row

    def assign_context(
        self, rule_id: int, context_level: ContextLevel, object_id: int
    ) -> RuleContext:
        rule = self.get_rule(rule_id)
        for ctx in rule.contexts:
            if ctx.context_level == context_level and ctx.object_id == object_id:
                return ctx
        ctx = RuleContext(context_level=context_level, object_id=object_id)
        rule.contexts.append(ctx)
        self._commit("assign context")
        return ctx

    def set_status(self, rule_id: int, status: RuleStatus) -> Rule:
        rule = self.get_rule(rule_id)
        rule.status = status
        self._commit("set rule status")
        logger.info(f"Rule {rule_id} is now {status.value}")
        return rule

    def pause_rule(self, rule_id: int) -> Rule:
        return self.set_status(rule_id, RuleStatus.PAUSED)

    def resume_rule(self, rule_id: int) -> Rule:
        return self.set_status(rule_id, RuleStatus.ACTIVE)

    def clone_as_template(self, rule_id: int, created_by: int, site_course_id: int = 1) -> Rule:
        """Copy a rule's conditions and actions into a new template"""
        source = self.get_rule(rule_id)
        source.default_rule = True

        template = Rule(
            name=source.name,
            description=source.description,
            created_by=created_by,
            rule_type=RuleType.TEMPLATE,
            max_fires=source.max_fires,
            re_arm_interval=source.re_arm_interval,
        )
        template.contexts.append(
            RuleContext(context_level=ContextLevel.COURSE, object_id=site_course_id)
        )
        for row in source.conditions:
            template.conditions.append(
                RuleCondition(
                    plugin_name=row.plugin_name,
                    parameters=row.parameters,
                    complementary=row.complementary,
                    position=row.position,
                    cmid=row.cmid,
                )
            )
        for row in source.actions:
            template.actions.append(
                RuleAction(
                    plugin_name=row.plugin_name,
                    parameters=row.parameters,
                    position=row.position,
                )
            )
        self.db.add(template)
        self._commit("clone rule")
        logger.info(f"Cloned rule {rule_id} into template {template.id}")
        return template

    def delete_rule(self, rule_id: int) -> None:
        """
        Delete a rule with its conditions, actions and contexts, and sweep the
        triggers, launches and cache entries keyed on it, in one transaction.
        """
        rule = self.get_rule(rule_id)
        condition_ids = [row.id for row in rule.conditions]
        try:
            launches = LaunchLedger(self.db).delete_by_rule(rule_id)
            caches = CacheStore(self.db).delete_by_conditions(condition_ids)
            triggers = TriggerStore(self.db).delete_by_rule(rule_id)
            self.db.delete(rule)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            f"Deleted rule {rule_id} with {triggers} triggers, "
            f"{launches} launch records and {caches} cache entries"
        )

    # Status

    def get_rule_status(self, rule_id: int) -> RuleStatusResponse:
        rule = self.get_rule(rule_id)
        known, pending, next_fire_at = self.db.execute(
            select(
                func.count(RuleTrigger.id),
                func.count(RuleTrigger.next_fire_at),
                func.min(RuleTrigger.next_fire_at),
            ).where(RuleTrigger.rule_id == rule_id)
        ).one()
        return RuleStatusResponse(
            id=rule.id,
            name=rule.name,
            status=rule.status,
            health=rule.health,
            last_error=rule.last_error,
            max_fires=rule.max_fires,
            re_arm_interval=rule.re_arm_interval,
            runtime=to_human_format(rule.re_arm_interval),
            pending_triggers=pending,
            parked_triggers=known - pending,
            next_fire_at=next_fire_at,
            total_fires=LaunchLedger(self.db).total_fires(rule_id),
        )

    def list_rule_statuses(
        self, health: Optional[RuleHealth] = None
    ) -> List[RuleStatusResponse]:
        stmt = select(Rule.id).order_by(Rule.id)
        if health is not None:
            stmt = stmt.where(Rule.health == health)
        return [self.get_rule_status(rule_id) for rule_id in self.db.scalars(stmt).all()]

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to {operation}: {e}")
            raise StoreError(f"Failed to {operation}") from e
