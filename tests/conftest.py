import pytest
from datetime import datetime
from typing import Generator

from sqlalchemy.orm import Session, sessionmaker

import notifyrules.plugins  # noqa: F401
from notifyrules.db.db import create_tables
from notifyrules.db.models import (
    Course,
    CourseEnrolment,
    CourseModule,
    User,
)
from notifyrules.db.session import build_engine
from notifyrules.services.rules import RuleScheduler, RuleService


@pytest.fixture
def test_engine(tmp_path):
    """File-backed SQLite so worker threads share the database."""
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'notifyrules-test.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> sessionmaker:
    return sessionmaker(bind=test_engine, class_=Session, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a database session for each test."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def rule_service(db_session: Session) -> RuleService:
    return RuleService(db_session)


@pytest.fixture
def scheduler(session_factory) -> RuleScheduler:
    return RuleScheduler(
        session_factory=session_factory,
        concurrency=2,
        timeout=10,
        launch_check="after",
        batch_size=100,
    )


# Test data factories
@pytest.fixture
def teacher(db_session: Session) -> User:
    """Create the teacher who authors rules."""
    user = User(
        username="jsmith",
        first_name="John",
        last_name="Smith",
        email="jsmith@example.edu",
        address="Room 204",
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def student(db_session: Session) -> User:
    """Create a student user."""
    user = User(
        username="alice",
        first_name="Alice",
        last_name="Walker",
        email="alice@example.edu",
        address="Dorm B",
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def sample_course(db_session: Session) -> Course:
    """Create a course in category 7."""
    course = Course(
        category_id=7,
        fullname="Algorithms and Data Structures",
        start_date=datetime(2024, 9, 1),
    )
    db_session.add(course)
    db_session.commit()
    return course


@pytest.fixture
def enrolled_student(db_session: Session, sample_course: Course, student: User) -> User:
    """Enrol the student in the sample course."""
    db_session.add(CourseEnrolment(course_id=sample_course.id, user_id=student.id))
    db_session.commit()
    return student


@pytest.fixture
def sample_module(db_session: Session, sample_course: Course) -> CourseModule:
    """Create a quiz opening on 10 January 2025 at 09:00."""
    module = CourseModule(
        course_id=sample_course.id,
        name="Quiz 1",
        time_open=datetime(2025, 1, 10, 9, 0),
    )
    db_session.add(module)
    db_session.commit()
    return module
