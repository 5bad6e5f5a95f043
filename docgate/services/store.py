"""Record-store access for grants.

Every counter or flag that two requests may race on is changed here with a
single conditional UPDATE, so the database decides the winner.
"""
from contextlib import contextmanager
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import (
    DisconnectionError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)

from ..errors import DependencyUnavailable, SystemFailure
from ..models import Grant, db

logger = logging.getLogger(__name__)


def translate_store_error(exc: SQLAlchemyError):
    if isinstance(exc, (OperationalError, PoolTimeoutError, DisconnectionError)):
        return DependencyUnavailable(f'record store unavailable: {exc.__class__.__name__}')
    return SystemFailure(f'record store failure: {exc.__class__.__name__}')


@contextmanager
def guarded(session=None, passthrough=()):
    """Roll back on any error; store errors surface as DependencyUnavailable/SystemFailure.

    Exception types listed in ``passthrough`` are rolled back but re-raised as is.
    """
    session = session or db.session
    try:
        yield session
    except passthrough:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error('store operation failed: %s', exc.__class__.__name__)
        raise translate_store_error(exc) from exc
    except Exception:
        session.rollback()
        raise


class GrantStore:
    def __init__(self, session=None):
        self.session = session or db.session

    def find_by_token(self, token: str):
        if not token:
            return None
        return self.session.execute(select(Grant).where(Grant.token == token)).scalar_one_or_none()

    def get(self, grant_id: str):
        return self.session.get(Grant, grant_id)

    def try_consume_quota(self, model, row_id, field='download_count', limit='max_downloads', now=None) -> bool:
        """Increment ``field`` only while it stays below ``limit``.

        ``limit`` is either a column name on the same table or a fixed int.
        Returns False when the quota was already used up.
        """
        table = model.__table__
        counter = table.c[field]
        ceiling = table.c[limit] if isinstance(limit, str) else limit
        result = self.session.execute(
            update(table)
            .where(table.c.id == row_id, counter < ceiling)
            .values({field: counter + 1})
        )
        if result.rowcount != 1:
            return False
        if now is not None and issubclass(model, Grant):
            self._touch(row_id, now)
        return True

    def increment(self, model, row_id, field='download_count'):
        table = model.__table__
        self.session.execute(
            update(table).where(table.c.id == row_id).values({field: table.c[field] + 1})
        )

    def set_once(self, model, row_id, flag, values=None, now=None) -> bool:
        """Flip a boolean ``flag`` false -> true; True only for the caller that flipped it."""
        table = model.__table__
        result = self.session.execute(
            update(table)
            .where(table.c.id == row_id, table.c[flag].is_(False))
            .values({flag: True, **(values or {})})
        )
        flipped = result.rowcount == 1
        if flipped and now is not None and issubclass(model, Grant):
            self._touch(row_id, now)
        return flipped

    def reset_counter(self, model, row_id, field):
        table = model.__table__
        self.session.execute(update(table).where(table.c.id == row_id).values({field: 0}))

    def deactivate(self, grant_id, now) -> bool:
        table = Grant.__table__
        result = self.session.execute(
            update(table)
            .where(table.c.id == grant_id, table.c.is_active.is_(True))
            .values(is_active=False, updated_at=now)
        )
        return result.rowcount == 1

    def _touch(self, grant_id, now):
        table = Grant.__table__
        self.session.execute(update(table).where(table.c.id == grant_id).values(updated_at=now))

    def commit(self):
        with guarded(self.session):
            self.session.commit()

    def rollback(self):
        self.session.rollback()
