import argparse
from typing import Optional

from sqlalchemy.engine import Engine

from .models import Base
from .session import engine

from notifyrules.utils.logging import get_logger

logger = get_logger()


def create_tables(bind: Optional[Engine] = None):
    """Create the rule, scheduling and host tables that do not exist yet"""
    bind = bind or engine
    Base.metadata.create_all(bind)
    logger.info(
        f"Created tables on {bind.url.render_as_string(hide_password=True)}: "
        f"{', '.join(sorted(Base.metadata.tables))}"
    )


def drop_tables(bind: Optional[Engine] = None):
    bind = bind or engine
    Base.metadata.drop_all(bind)
    logger.info("Dropped all tables.")


def reset_db(bind: Optional[Engine] = None):
    """Drop and recreate every table. All triggers, caches and launches are lost."""
    logger.warning("Resetting database...")
    drop_tables(bind)
    create_tables(bind)
    logger.info("Database reset complete.")


def main():
    parser = argparse.ArgumentParser(description="Manage the notifyrules database")
    parser.add_argument(
        "command", choices=["create", "reset"], help="create missing tables or reset all"
    )
    args = parser.parse_args()

    if args.command == "reset":
        reset_db()
    else:
        create_tables()


if __name__ == "__main__":
    main()
