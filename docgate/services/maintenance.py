"""Periodic sweeps, triggered by an external scheduler through the admin API."""
import logging
from typing import Literal

from sqlalchemy import update

from ..errors import InvalidRequest
from ..models import Grant, UnlockEntry, utcnow
from . import notifications
from .store import guarded

logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    'expire_stale_grants',
    'advance_progressive_unlocks',
    'dispatch_notifications',
]
MAINTENANCE_TASKS = MaintenanceTask.__args__


def expire_stale_grants(now=None) -> int:
    now = now or utcnow()
    with guarded() as session:
        result = session.execute(
            update(Grant.__table__)
            .where(Grant.__table__.c.expires_at < now, Grant.__table__.c.is_active.is_(True))
            .values(is_active=False, updated_at=now)
        )
        session.commit()
    return result.rowcount or 0


def advance_progressive_unlocks(now=None) -> int:
    now = now or utcnow()
    table = UnlockEntry.__table__
    with guarded() as session:
        result = session.execute(
            update(table)
            .where(table.c.unlock_time <= now, table.c.is_unlocked.is_(False))
            .values(is_unlocked=True, unlocked_at=now)
        )
        session.commit()
    return result.rowcount or 0


def dispatch_pending_notifications(limit: int = 50, now=None, mailer=None) -> int:
    # rows that keep failing flip to "failed" after NOTIFY_MAX_ATTEMPTS
    return notifications.dispatch_pending(limit=limit, mailer=mailer, now=now or utcnow())


def run_maintenance(task: MaintenanceTask, now=None, mailer=None) -> dict[str, int]:
    if task == 'expire_stale_grants':
        count = expire_stale_grants(now)
    elif task == 'advance_progressive_unlocks':
        count = advance_progressive_unlocks(now)
    elif task == 'dispatch_notifications':
        count = dispatch_pending_notifications(now=now, mailer=mailer)
    else:
        raise InvalidRequest(f'unknown maintenance task: {task!r}')
    logger.info('maintenance %s affected %d rows', task, count)
    return {task: count}
