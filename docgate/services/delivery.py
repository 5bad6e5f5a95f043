"""Delivery orchestrator: turns an order plus a chosen strategy into grants.

Each issuance is a single transaction holding the grant, its children and one
outbox notification. The notification is dispatched after commit; a failed
send never rolls the grant back.
"""
from collections import OrderedDict
from datetime import timedelta
import logging
from urllib.parse import quote

from flask import current_app
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from ..errors import (
    DocgateError,
    GrantNotFound,
    InvalidRequest,
    NoDocumentsAvailable,
    OrderNotFound,
    TokenCollision,
    UnknownStrategy,
)
from ..models import (
    STRATEGIES,
    BlockchainGrant,
    LinkGrant,
    MfaGrant,
    Order,
    PortalDocument,
    PortalGrant,
    ProgressiveGrant,
    QrGrant,
    SessionDocument,
    UnlockEntry,
    utcnow,
)
from . import notifications
from .ledger import SyntheticLedger, document_hash
from .store import GrantStore, guarded
from .tokens import new_otp, new_temporary_password, new_token

logger = logging.getLogger(__name__)

# public route prefix per strategy: /<route>/<token>?identity=<email>
ROUTES = {
    'link': 'secure-download',
    'mfa': 'verify-download',
    'progressive': 'progressive',
    'portal': 'portal',
    'qr': 'qr',
    'blockchain': 'blockchain',
}
STRATEGY_BY_ROUTE = {route: strategy for strategy, route in ROUTES.items()}

_ISSUE_ATTEMPTS = 2


def normalize_documents(documents) -> list[dict]:
    docs = []
    for raw in documents or []:
        if not raw or not raw.get('id') or not raw.get('url'):
            continue
        docs.append({
            'id': str(raw['id']),
            'name': raw.get('name') or str(raw['id']),
            'url': raw['url'],
            'category': raw.get('category') or 'general',
            'review_stage': raw.get('review_stage') or 'default',
            'checksum': raw.get('checksum'),
            'unlock_delay_hours': raw.get('unlock_delay_hours'),
        })
    return docs


def _public(doc: dict) -> dict:
    return {k: doc[k] for k in ('id', 'name', 'url', 'category', 'review_stage')}


def _as_int(value, key, minimum) -> int:
    if isinstance(value, bool):
        raise InvalidRequest(f'{key} must be an integer')
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f'{key} must be an integer')
    if number < minimum:
        raise InvalidRequest(f'{key} must be at least {minimum}')
    return number


def _option(options, key, default, minimum=1) -> int:
    """Integer option; only a missing or null value falls back to ``default``."""
    value = options.get(key)
    if value is None:
        return default
    return _as_int(value, key, minimum)


def _window(options) -> tuple[int, int]:
    window = options.get('download_window')
    if window is None:
        return 9, 18
    if isinstance(window, dict):
        window = (window.get('start', 9), window.get('end', 18))
    if not isinstance(window, (list, tuple)) or len(window) != 2:
        raise InvalidRequest('download_window must be [start, end] or {"start": ..., "end": ...}')
    start = _as_int(window[0], 'download_window', 0)
    end = _as_int(window[1], 'download_window', 0)
    if not (0 <= start <= 23 and 0 <= end <= 23):
        raise InvalidRequest('download_window hours must be between 0 and 23')
    return start, end


class DeliveryOrchestrator:
    def __init__(self, store=None, ledger=None, mailer=None, time_provider=None, config=None):
        self.store = store or GrantStore()
        self.ledger = ledger or SyntheticLedger()
        self.mailer = mailer
        self._now = time_provider or utcnow
        self.config = config if config is not None else current_app.config

    @classmethod
    def from_app(cls, app=None):
        app = app or current_app
        return cls(
            mailer=app.extensions.get('docgate.mailer'),
            time_provider=app.config.get('TIME_PROVIDER'),
            config=app.config,
        )

    def issue_grant(self, order_id, recipient_email, recipient_name, strategy, documents, options=None) -> dict:
        """Persist the grant(s) for one delivery and return the access descriptor."""
        if strategy not in STRATEGIES:
            raise UnknownStrategy(f'unknown strategy: {strategy!r}')
        recipient_email = (recipient_email or '').strip().lower()
        if '@' not in recipient_email:
            raise InvalidRequest('recipient_email is required')
        docs = normalize_documents(documents)
        if not docs:
            raise NoDocumentsAvailable('no documents available for delivery')
        options = dict(options or {})
        builder = getattr(self, f'_issue_{strategy}')

        for attempt in range(1, _ISSUE_ATTEMPTS + 1):
            try:
                with guarded(self.store.session, passthrough=(IntegrityError,)):
                    order = self.store.session.get(Order, order_id)
                    if order is None:
                        raise OrderNotFound(f'order {order_id} not found')
                    now = self._now()
                    descriptor, notification = builder(order, recipient_email, recipient_name, docs, options, now)
                    self.store.session.commit()
                break
            except IntegrityError:
                logger.warning('token collision issuing %s grant for order %s (attempt %d)', strategy, order_id, attempt)
                if attempt == _ISSUE_ATTEMPTS:
                    raise TokenCollision('could not generate a unique token')

        logger.info('issued %s grant for order %s', strategy, order_id)
        self._dispatch(notification)
        return descriptor

    def revoke_grant(self, grant_id) -> bool:
        with guarded(self.store.session):
            grant = self.store.get(grant_id)
            if grant is None:
                raise GrantNotFound(f'grant {grant_id} not found')
            changed = self.store.deactivate(grant.id, self._now())
            self.store.session.commit()
        logger.info('revoked grant %s (changed=%s)', grant_id, changed)
        return changed

    def request_new_links(self, order_id, recipient_email) -> int:
        """Queue a request for fresh links to the administrators."""
        with guarded(self.store.session):
            order = self.store.session.get(Order, order_id)
            if order is None:
                raise OrderNotFound(f'order {order_id} not found')
            notification = notifications.enqueue(
                to_address=self.config.get('ADMIN_EMAIL'),
                template='admin_new_links_request',
                payload={
                    'order_id': order.id,
                    'order_reference': order.reference,
                    'recipient_email': (recipient_email or '').strip().lower(),
                    'requested_at': self._now().isoformat(),
                },
                session=self.store.session,
            )
            self.store.session.commit()
        self._dispatch(notification)
        return notification.id

    # builders: stage everything, flush, and return (descriptor, notification)

    def _issue_link(self, order, email, name, docs, options, now):
        expires_at = now + timedelta(hours=_option(options, 'expiration_hours', self.config['LINK_EXPIRATION_HOURS']))
        max_downloads = _option(options, 'max_downloads', self.config['LINK_MAX_DOWNLOADS'])
        grants = []
        for doc in docs:
            grant = LinkGrant(
                token=new_token(),
                recipient_email=email,
                order=order,
                expires_at=expires_at,
                document_id=doc['id'],
                document_name=doc['name'],
                document_url=doc['url'],
                max_downloads=max_downloads,
                created_at=now,
                updated_at=now,
            )
            self.store.session.add(grant)
            grants.append((grant, doc))
        self.store.session.flush()
        links = [
            {
                'grant_id': grant.id,
                'document_id': doc['id'],
                'document_name': doc['name'],
                'url': self._url('link', grant.token, email),
                'expires_at': expires_at.isoformat(),
            }
            for grant, doc in grants
        ]
        notification = notifications.enqueue(
            to_address=email,
            template='link_access',
            payload={'name': name, 'links': links, 'max_downloads': max_downloads},
            grant_id=grants[0][0].id,
            session=self.store.session,
        )
        return {'strategy': 'link', 'grants': links, 'expires_at': expires_at.isoformat()}, notification

    def _issue_mfa(self, order, email, name, docs, options, now):
        expires_at = now + timedelta(hours=_option(options, 'expiration_hours', self.config['MFA_EXPIRATION_HOURS']))
        start, end = _window(options)
        grant = MfaGrant(
            token=new_token(),
            recipient_email=email,
            order=order,
            expires_at=expires_at,
            verification_code=new_otp(),
            allowed_ip_addresses=list(options.get('allowed_ip_addresses') or []) or None,
            download_window_start=start,
            download_window_end=end,
            max_downloads=_option(options, 'max_downloads', self.config['MFA_MAX_DOWNLOADS']),
            created_at=now,
            updated_at=now,
            items=[
                SessionDocument(
                    position=index,
                    document_id=doc['id'],
                    document_name=doc['name'],
                    document_url=doc['url'],
                    document_category=doc['category'],
                    review_stage=doc['review_stage'],
                )
                for index, doc in enumerate(docs)
            ],
        )
        self.store.session.add(grant)
        self.store.session.flush()
        url = self._url('mfa', grant.token, email)
        notification = notifications.enqueue(
            to_address=email,
            template='mfa_access',
            payload={
                'name': name,
                'url': url,
                'verification_code': grant.verification_code,
                'expires_at': expires_at.isoformat(),
                'max_downloads': grant.max_downloads,
                'download_window': {'start': start, 'end': end},
            },
            grant_id=grant.id,
            session=self.store.session,
        )
        descriptor = {
            'strategy': 'mfa',
            'session_id': grant.id,
            'token': grant.token,
            'url': url,
            'expires_at': expires_at.isoformat(),
        }
        return descriptor, notification

    def _issue_blockchain(self, order, email, name, docs, options, now):
        expires_at = now + timedelta(
            hours=_option(options, 'expiration_hours', self.config['BLOCKCHAIN_EXPIRATION_HOURS'])
        )
        hashes = [document_hash(doc) for doc in docs]
        tx_id, proof = self.ledger.record(order.id, email, hashes)
        grant = BlockchainGrant(
            token=new_token(),
            recipient_email=email,
            order=order,
            expires_at=expires_at,
            blockchain_tx_id=tx_id,
            proof_of_delivery=proof,
            document_hashes=hashes,
            documents=[_public(doc) for doc in docs],
            created_at=now,
            updated_at=now,
        )
        self.store.session.add(grant)
        self.store.session.flush()
        url = self._url('blockchain', grant.token, email)
        notification = notifications.enqueue(
            to_address=email,
            template='blockchain_receipt',
            payload={'name': name, 'url': url, 'blockchain_tx_id': tx_id, 'proof_of_delivery': proof},
            grant_id=grant.id,
            session=self.store.session,
        )
        descriptor = {
            'strategy': 'blockchain',
            'grant_id': grant.id,
            'token': grant.token,
            'url': url,
            'blockchain_tx_id': tx_id,
            'proof_of_delivery': proof,
            'document_hashes': hashes,
            'expires_at': expires_at.isoformat(),
        }
        return descriptor, notification

    def _issue_progressive(self, order, email, name, docs, options, now):
        stages = OrderedDict()
        for doc in docs:
            stages.setdefault(doc['review_stage'], []).append(doc)
        interval = _option(
            options, 'stage_interval_hours', self.config['PROGRESSIVE_STAGE_INTERVAL_HOURS'], minimum=0,
        )
        stage_delays = options.get('stage_delays') or {}
        if isinstance(stage_delays, (list, tuple)):
            stage_delays = dict(zip(stages.keys(), stage_delays))
        elif not isinstance(stage_delays, dict):
            raise InvalidRequest('stage_delays must be a list or a mapping of stage to hours')

        entries = []
        for index, (stage, stage_docs) in enumerate(stages.items()):
            delay = stage_delays.get(stage)
            if delay is None:
                declared = [d['unlock_delay_hours'] for d in stage_docs if d['unlock_delay_hours'] is not None]
                delay = max(declared) if declared else index * interval
            delay = _as_int(delay, 'stage_delays', 0)
            entries.append(UnlockEntry(
                review_stage=stage,
                unlock_delay_hours=delay,
                unlock_time=now + timedelta(hours=delay),
                documents=[_public(d) for d in stage_docs],
                is_unlocked=delay == 0,
                unlocked_at=now if delay == 0 else None,
                created_at=now,
            ))

        last_unlock = max(entry.unlock_time for entry in entries)
        expires_at = max(
            now + timedelta(hours=_option(options, 'expiration_hours', self.config['PROGRESSIVE_EXPIRATION_HOURS'])),
            last_unlock + timedelta(hours=max(interval, 24)),
        )
        grant = ProgressiveGrant(
            token=new_token(),
            recipient_email=email,
            order=order,
            expires_at=expires_at,
            unlocks=entries,
            created_at=now,
            updated_at=now,
        )
        self.store.session.add(grant)
        self.store.session.flush()
        url = self._url('progressive', grant.token, email)
        schedule = [entry.as_schedule() for entry in entries]
        notification = notifications.enqueue(
            to_address=email,
            template='progressive_schedule',
            payload={'name': name, 'url': url, 'unlock_schedule': schedule},
            grant_id=grant.id,
            session=self.store.session,
        )
        descriptor = {
            'strategy': 'progressive',
            'session_id': grant.id,
            'token': grant.token,
            'url': url,
            'unlock_schedule': schedule,
            'expires_at': expires_at.isoformat(),
        }
        return descriptor, notification

    def _issue_portal(self, order, email, name, docs, options, now):
        expires_at = now + timedelta(hours=_option(options, 'expiration_hours', self.config['PORTAL_EXPIRATION_HOURS']))
        temporary_password = new_temporary_password()
        grant = PortalGrant(
            token=new_token(),
            recipient_email=email,
            order=order,
            expires_at=expires_at,
            customer_name=name or email,
            password_hash=generate_password_hash(temporary_password),
            created_at=now,
            updated_at=now,
            items=[
                PortalDocument(
                    position=index,
                    document_id=doc['id'],
                    document_name=doc['name'],
                    document_url=doc['url'],
                    document_category=doc['category'],
                    review_stage=doc['review_stage'],
                )
                for index, doc in enumerate(docs)
            ],
        )
        self.store.session.add(grant)
        self.store.session.flush()
        url = self._url('portal', grant.access_token, email)
        notification = notifications.enqueue(
            to_address=email,
            template='portal_credentials',
            payload={
                'name': name,
                'url': url,
                'access_token': grant.access_token,
                'temporary_password': temporary_password,
                'expires_at': expires_at.isoformat(),
            },
            grant_id=grant.id,
            session=self.store.session,
        )
        descriptor = {
            'strategy': 'portal',
            'portal_id': grant.id,
            'access_token': grant.access_token,
            'url': url,
            'expires_at': expires_at.isoformat(),
        }
        return descriptor, notification

    def _issue_qr(self, order, email, name, docs, options, now):
        expires_at = now + timedelta(hours=_option(options, 'expiration_hours', self.config['QR_EXPIRATION_HOURS']))
        grant = QrGrant(
            token=new_token(),
            recipient_email=email,
            order=order,
            expires_at=expires_at,
            documents=[_public(doc) for doc in docs],
            created_at=now,
            updated_at=now,
        )
        self.store.session.add(grant)
        self.store.session.flush()
        url = self._url('qr', grant.verification_token, email)
        notification = notifications.enqueue(
            to_address=email,
            template='qr_access',
            payload={'name': name, 'url': url, 'expires_at': expires_at.isoformat()},
            grant_id=grant.id,
            session=self.store.session,
        )
        descriptor = {
            'strategy': 'qr',
            'grant_id': grant.id,
            'verification_token': grant.verification_token,
            'url': url,
            'expires_at': expires_at.isoformat(),
        }
        return descriptor, notification

    def _url(self, strategy, token, email):
        base = self.config.get('BASE_URL', '').rstrip('/')
        return f"{base}/{ROUTES[strategy]}/{token}?identity={quote(email)}"

    def _dispatch(self, notification):
        try:
            notifications.dispatch(notification, mailer=self.mailer, now=self._now())
        except DocgateError as exc:
            # the grant is committed; the sweeper redelivers pending rows
            logger.warning('notification %s left pending: %s', notification.id, exc)


def grant_url(grant) -> str:
    base = current_app.config.get('BASE_URL', '').rstrip('/')
    return f"{base}/{ROUTES[grant.strategy]}/{grant.token}?identity={quote(grant.recipient_email)}"
