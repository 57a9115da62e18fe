from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

# Backends whose INSERT supports ON CONFLICT clauses
_CONFLICT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def conflict_insert(db_session: Session, model):
    """
    Return a dialect INSERT construct for ``model`` that supports
    ``on_conflict_do_update`` / ``on_conflict_do_nothing``, or None when the
    bound backend has no such clause and callers must fall back to
    update-then-insert.
    """
    factory = _CONFLICT_INSERTS.get(db_session.get_bind().dialect.name)
    if factory is None:
        return None
    return factory(model)
