import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from ..errors import SYSTEM_ERROR_REASON
from ..models import AuditEntry, Grant, db, utcnow
from .device import ClientHints

logger = logging.getLogger(__name__)

_SENSITIVE_KEYS = ('token', 'code', 'password', 'secret')
_REDACTED = '[REDACTED]'


def sanitize(value: Any) -> Any:
    # Recursively scrub credential-looking keys before logging or persisting.
    if isinstance(value, dict):
        return {
            str(k): (_REDACTED if any(s in str(k).lower() for s in _SENSITIVE_KEYS) else sanitize(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [sanitize(v) for v in value]
    return value


def record_attempt(
    *,
    grant: Grant | None,
    email: str | None,
    hints: ClientHints | None,
    success: bool,
    reason: str | None = None,
    action: str = 'verify',
    now=None,
    session=None,
) -> AuditEntry:
    """Stage one audit row in the caller's transaction."""
    session = session or db.session
    hints = hints or ClientHints()
    entry = AuditEntry(
        grant_id=grant.id if grant is not None else None,
        strategy=grant.strategy if grant is not None else None,
        action=action,
        attempted_email=(email or '').strip().lower(),
        ip_address=hints.ip_address,
        user_agent=hints.user_agent,
        device_fingerprint=hints.device_fingerprint,
        success=success,
        failure_reason=reason,
        attempted_at=now or utcnow(),
    )
    session.add(entry)
    return entry


def record_system_error(*, grant_id, strategy, email, hints, action, now=None):
    # Best effort: the store just failed, so this write may fail as well.
    hints = hints or ClientHints()
    try:
        db.session.add(AuditEntry(
            grant_id=grant_id,
            strategy=strategy,
            action=action,
            attempted_email=(email or '').strip().lower(),
            ip_address=hints.ip_address,
            user_agent=hints.user_agent,
            device_fingerprint=hints.device_fingerprint,
            success=False,
            failure_reason=SYSTEM_ERROR_REASON,
            attempted_at=now or utcnow(),
        ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning('could not record system_error audit entry for grant %s', grant_id)


def list_attempts(grant_id: str | None = None, limit: int = 100):
    stmt = select(AuditEntry).order_by(AuditEntry.id.desc()).limit(limit)
    if grant_id:
        stmt = stmt.where(AuditEntry.grant_id == grant_id)
    return db.session.execute(stmt).scalars().all()


def serialize_attempt(entry: AuditEntry) -> dict:
    return {
        'id': entry.id,
        'grant_id': entry.grant_id,
        'strategy': entry.strategy,
        'action': entry.action,
        'attempted_email': entry.attempted_email,
        'ip_address': entry.ip_address,
        'user_agent': entry.user_agent,
        'success': entry.success,
        'failure_reason': entry.failure_reason,
        'attempted_at': entry.attempted_at.isoformat() if entry.attempted_at else None,
    }


def download_statistics(order_id: str | None = None, now=None) -> dict:
    """Grant and attempt counters, optionally scoped to one order."""
    now = now or utcnow()
    grant_filter = [Grant.order_id == order_id] if order_id else []
    grants = db.session.execute(
        select(Grant.is_active, Grant.expires_at).where(*grant_filter)
    ).all()
    active = sum(1 for is_active, expires_at in grants if is_active and expires_at > now)

    attempts_stmt = select(AuditEntry.success, func.count()).group_by(AuditEntry.success)
    if order_id:
        attempts_stmt = attempts_stmt.where(
            AuditEntry.grant_id.in_(select(Grant.id).where(Grant.order_id == order_id))
        )
    by_outcome = dict(db.session.execute(attempts_stmt).all())
    succeeded = by_outcome.get(True, 0)
    failed = by_outcome.get(False, 0)
    return {
        'total_tokens': len(grants),
        'active_tokens': active,
        'expired_tokens': len(grants) - active,
        'total_attempts': succeeded + failed,
        'successful_downloads': succeeded,
        'failed_attempts': failed,
    }
