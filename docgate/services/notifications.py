"""Notification outbox.

Issuance writes one ``Notification`` row in the same transaction as the grant,
then tries to deliver it right after commit. Rows that fail stay ``pending`` and
are redelivered by the maintenance sweep until ``NOTIFY_MAX_ATTEMPTS``.
"""
import logging

import requests
from flask import current_app
from sqlalchemy import select

from ..errors import DependencyUnavailable, DocgateError, SystemFailure
from ..models import Notification, db, utcnow
from .audit import sanitize
from .store import guarded

logger = logging.getLogger(__name__)


class LogMailer:
    """Writes the message to the log instead of sending it (development default)."""

    def send(self, to_address: str, template: str, data: dict) -> None:
        logger.info('mail %s to %s: %s', template, to_address, sanitize(data))


class HttpMailer:
    """Posts messages as JSON to a transactional mail API."""

    def __init__(self, url: str, api_key: str | None = None, sender: str | None = None, timeout: int = 10):
        self.url = url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    def send(self, to_address: str, template: str, data: dict) -> None:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        body = {'from': self.sender, 'to': to_address, 'template': template, 'data': data}
        try:
            r = requests.post(self.url, json=body, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise DependencyUnavailable(f'mail relay unreachable: {exc.__class__.__name__}') from exc
        if r.status_code >= 500:
            raise DependencyUnavailable(f'mail relay returned {r.status_code}')
        if r.status_code >= 400:
            raise SystemFailure(f'mail relay rejected message: {r.status_code} {r.text[:200]}')


def mailer_from_config(config) -> LogMailer | HttpMailer:
    if config.get('MAIL_API_URL'):
        return HttpMailer(
            config['MAIL_API_URL'],
            api_key=config.get('MAIL_API_KEY'),
            sender=config.get('MAIL_FROM'),
            timeout=config.get('NOTIFY_TIMEOUT', 10),
        )
    return LogMailer()


def get_mailer():
    return current_app.extensions['docgate.mailer']


def enqueue(*, to_address: str, template: str, payload: dict, grant_id: str | None = None, session=None):
    """Stage an outbox row in the caller's transaction."""
    session = session or db.session
    notification = Notification(grant_id=grant_id, to_address=to_address, template=template, payload=payload)
    session.add(notification)
    return notification


def dispatch(notification: Notification, mailer=None, now=None, max_attempts: int | None = None) -> bool:
    """Try to deliver one outbox row. Returns True once it is sent."""
    mailer = mailer or get_mailer()
    if max_attempts is None:
        max_attempts = current_app.config.get('NOTIFY_MAX_ATTEMPTS', 5)
    if notification.status != 'pending':
        return notification.status == 'sent'
    notification.attempts = (notification.attempts or 0) + 1
    try:
        mailer.send(notification.to_address, notification.template, dict(notification.payload or {}))
    except (DocgateError, requests.RequestException) as exc:
        notification.last_error = str(exc)[:500]
        if notification.attempts >= max_attempts:
            notification.status = 'failed'
        logger.warning(
            'notification %s (%s) attempt %d failed: %s',
            notification.id, notification.template, notification.attempts, exc,
        )
    else:
        notification.status = 'sent'
        notification.sent_at = now or utcnow()
        notification.last_error = None
        # secrets (codes, temporary passwords) only need to live until delivery
        notification.payload = sanitize(notification.payload or {})
    with guarded():
        db.session.commit()
    return notification.status == 'sent'


def dispatch_pending(limit: int = 50, mailer=None, now=None) -> int:
    with guarded():
        pending = db.session.execute(
            select(Notification)
            .where(Notification.status == 'pending')
            .order_by(Notification.id)
            .limit(limit)
        ).scalars().all()
    sent = 0
    for notification in pending:
        if dispatch(notification, mailer=mailer, now=now):
            sent += 1
    return sent
