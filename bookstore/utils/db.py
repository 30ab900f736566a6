# bookstore/utils/db.py
from contextlib import contextmanager

import structlog
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import Internal, ServiceError

logger = structlog.get_logger(__name__)


@contextmanager
def atomic(session):
    """
    One unit of work: commit when the block finishes, roll back on any error.
    Service errors propagate unchanged; stray database errors become Internal.
    """
    try:
        yield session
        session.commit()
    except ServiceError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Database error, transaction rolled back", error=str(exc))
        raise Internal("storage failure") from exc
    except Exception:
        session.rollback()
        raise


def insert_ignore(session, model, values: dict, conflict_columns):
    """INSERT ... ON CONFLICT DO NOTHING for the dialects that have it."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert
        stmt = pg_insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert
        stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    else:
        try:
            with session.begin_nested():
                session.execute(insert(model).values(**values))
        except IntegrityError:
            pass
        return
    session.execute(stmt)


def compare_and_set(session, obj, column, expected, new, **extra) -> bool:
    """
    Conditional single-row UPDATE: write ``new`` (and ``extra`` columns) only
    if ``column`` still holds ``expected``. The in-session object is expired
    so the next read sees the stored row.
    """
    model = type(obj)
    values = {column.key: new, **extra}
    result = session.execute(
        update(model)
        .where(model.id == obj.id, column == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.expire(obj, list(values))
    return result.rowcount == 1
