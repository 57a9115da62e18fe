from typing import List, Optional
from datetime import datetime
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Text,
    ForeignKey,
    Enum,
    Index,
    UniqueConstraint,
    CheckConstraint,
    DateTime,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum

from notifyrules.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


# Enums
class RuleStatus(enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class RuleType(enum.Enum):
    TEMPLATE = "template"
    RULE = "rule"


class RuleHealth(enum.Enum):
    OK = "ok"
    CONFIG_ERROR = "config_error"


class ContextLevel(enum.Enum):
    COURSE = "course"
    CATEGORY = "category"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now
    )


# Host platform state read by plugins and by the primer
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(320), unique=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320))
    address: Mapped[Optional[str]] = mapped_column(String(500))

    __table_args__ = (Index("idx_users_username", "username"),)


class Course(Base, AuditMixin):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category_id: Mapped[Optional[int]] = mapped_column(Integer)
    fullname: Mapped[str] = mapped_column(String(255), nullable=False)
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    modules: Mapped[List["CourseModule"]] = relationship(
        back_populates="course", cascade="all, delete-orphan"
    )
    enrolments: Mapped[List["CourseEnrolment"]] = relationship(
        back_populates="course", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("idx_courses_category_id", "category_id"),)


class CourseModule(Base, AuditMixin):
    __tablename__ = "course_modules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    time_open: Mapped[Optional[datetime]] = mapped_column(DateTime)

    course: Mapped["Course"] = relationship(back_populates="modules")

    __table_args__ = (Index("idx_course_modules_course_id", "course_id"),)


class CourseEnrolment(Base, AuditMixin):
    __tablename__ = "course_enrolments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    course: Mapped["Course"] = relationship(back_populates="enrolments")

    __table_args__ = (
        UniqueConstraint("course_id", "user_id", name="uq_enrolment_course_user"),
        Index("idx_enrolments_course_active", "course_id", "is_active"),
    )


class ActivityCompletion(Base, AuditMixin):
    __tablename__ = "activity_completions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cmid: Mapped[int] = mapped_column(
        Integer, ForeignKey("course_modules.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("cmid", "user_id", name="uq_completion_cm_user"),
    )


# Rules
class Rule(Base, AuditMixin):
    __tablename__ = "rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[RuleStatus] = mapped_column(
        Enum(RuleStatus), default=RuleStatus.ACTIVE, nullable=False
    )
    created_by: Mapped[int] = mapped_column(Integer, nullable=False)
    rule_type: Mapped[RuleType] = mapped_column(
        Enum(RuleType), default=RuleType.RULE, nullable=False
    )
    shared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    forced: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Set on a rule once it has been cloned into a template
    default_rule: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    max_fires: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    re_arm_interval: Mapped[int] = mapped_column(Integer, default=86400, nullable=False)
    health: Mapped[RuleHealth] = mapped_column(
        Enum(RuleHealth), default=RuleHealth.OK, nullable=False
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    # Relationships
    conditions: Mapped[List["RuleCondition"]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="RuleCondition.position",
    )
    actions: Mapped[List["RuleAction"]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="RuleAction.position",
    )
    contexts: Mapped[List["RuleContext"]] = relationship(
        back_populates="rule", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("max_fires >= 1", name="ck_rules_max_fires_min"),
        CheckConstraint("re_arm_interval >= 0", name="ck_rules_re_arm_interval_min"),
        Index("idx_rules_status_type", "status", "rule_type"),
        Index("idx_rules_health", "health"),
        Index("idx_rules_created_by", "created_by"),
    )


class RuleCondition(Base, AuditMixin):
    __tablename__ = "rule_conditions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False
    )
    plugin_name: Mapped[str] = mapped_column(String(100), nullable=False)
    # JSON stored as Text - validated by the plugin's parameter model
    parameters: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    # False for conditions, True for exceptions
    complementary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cmid: Mapped[Optional[int]] = mapped_column(Integer)

    rule: Mapped["Rule"] = relationship(back_populates="conditions")

    __table_args__ = (
        Index("idx_rule_conditions_rule", "rule_id", "complementary", "position"),
        Index("idx_rule_conditions_plugin_cm", "plugin_name", "cmid"),
    )


class RuleAction(Base, AuditMixin):
    __tablename__ = "rule_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False
    )
    plugin_name: Mapped[str] = mapped_column(String(100), nullable=False)
    parameters: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    rule: Mapped["Rule"] = relationship(back_populates="actions")

    __table_args__ = (Index("idx_rule_actions_rule", "rule_id", "position"),)


class RuleContext(Base, AuditMixin):
    __tablename__ = "rule_contexts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False
    )
    context_level: Mapped[ContextLevel] = mapped_column(
        Enum(ContextLevel), nullable=False
    )
    object_id: Mapped[int] = mapped_column(Integer, nullable=False)

    rule: Mapped["Rule"] = relationship(back_populates="contexts")

    __table_args__ = (
        UniqueConstraint(
            "rule_id", "context_level", "object_id", name="uq_rule_ctx_level_object"
        ),
        Index("idx_rule_contexts_level_object", "context_level", "object_id"),
    )


# Scheduling state, keyed by identifiers and swept explicitly on rule deletion
class RuleTrigger(Base, AuditMixin):
    __tablename__ = "rule_triggers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    course_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # NULL parks the tuple until an event or a later upsert schedules it
    next_fire_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "rule_id", "user_id", "course_id", name="uq_trigger_rule_user_course"
        ),
        Index("idx_triggers_next_fire_at", "next_fire_at"),
    )


class ConditionCache(Base, AuditMixin):
    __tablename__ = "condition_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    course_id: Mapped[int] = mapped_column(Integer, nullable=False)
    plugin_name: Mapped[str] = mapped_column(String(100), nullable=False)
    condition_id: Mapped[int] = mapped_column(Integer, nullable=False)
    value: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "course_id",
            "plugin_name",
            "condition_id",
            name="uq_cache_user_course_plugin_cond",
        ),
        Index("idx_cache_condition_id", "condition_id"),
    )


class RuleLaunch(Base, AuditMixin):
    __tablename__ = "rule_launches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    course_id: Mapped[int] = mapped_column(Integer, nullable=False)
    fire_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "rule_id", "user_id", "course_id", name="uq_launch_rule_user_course"
        ),
        CheckConstraint("fire_count >= 0", name="ck_launch_fire_count_min"),
    )


class RuleMessage(Base, AuditMixin):
    __tablename__ = "rule_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    course_id: Mapped[int] = mapped_column(Integer, nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("idx_rule_messages_rule_user", "rule_id", "user_id", "course_id"),
    )
