"""Verification engine: decides ALLOW/DENY for a presented grant token.

Every call resolves the grant, runs the common lifecycle checks (expiry,
active flag, identity) in a fixed order, then the strategy gate. The first
failing check determines the reason. Each call commits exactly one audit
entry together with whatever state the decision changed.
"""
from dataclasses import dataclass, field
import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from ..errors import DenyReason
from ..models import MfaGrant, utcnow
from .audit import record_attempt, record_system_error
from .device import ClientHints
from .gates import GateContext, gate_for
from .store import GrantStore, translate_store_error
from .tokens import codes_match

logger = logging.getLogger(__name__)

PENDING_IDENTITY = 'pending_identity'
PENDING_CODE = 'pending_code'
VERIFIED = 'verified'


@dataclass
class Decision:
    allowed: bool
    reason: DenyReason | None = None
    grant: object = None
    documents: list = field(default_factory=list)
    state: str | None = None
    must_change_password: bool | None = None
    context: GateContext | None = None

    @classmethod
    def allow(cls, grant, **kwargs):
        return cls(True, None, grant, **kwargs)

    @classmethod
    def deny(cls, reason: DenyReason, grant=None):
        return cls(False, reason, grant)

    def as_dict(self) -> dict:
        out = {
            'allowed': self.allowed,
            'reason': self.reason.value if self.reason else None,
        }
        if self.grant is not None and self.allowed:
            out['grant_id'] = self.grant.id
            out['strategy'] = self.grant.strategy
            out['expires_at'] = self.grant.expires_at.isoformat()
            out['documents'] = self.documents
        if self.state is not None:
            out['state'] = self.state
        if self.must_change_password is not None:
            out['must_change_password'] = self.must_change_password
        return out


def emails_match(expected: str, presented: str | None) -> bool:
    return (expected or '').strip().lower() == (presented or '').strip().lower()


class VerificationEngine:
    def __init__(
        self, store=None, time_provider=None, window_tz='UTC', min_password_length=10, max_code_attempts=5,
    ):
        self.store = store or GrantStore()
        self._now = time_provider or utcnow
        self.window_tz = window_tz
        self.min_password_length = min_password_length
        self.max_code_attempts = max_code_attempts

    @classmethod
    def from_app(cls, app=None):
        cfg = (app or current_app).config
        return cls(
            time_provider=cfg.get('TIME_PROVIDER'),
            window_tz=cfg.get('DOWNLOAD_WINDOW_TZ', 'UTC'),
            min_password_length=cfg.get('PORTAL_MIN_PASSWORD_LENGTH', 10),
            max_code_attempts=cfg.get('MFA_MAX_CODE_ATTEMPTS', 5),
        )

    # downloads

    def verify(self, token, email, hints=None, document_id=None, strategy=None, portal_session=None) -> Decision:
        """Decide a download attempt and consume quota on ALLOW.

        Portal grants additionally need ``portal_session``, the decoded claims of
        a session issued by ``portal_login`` for the same grant.
        """
        hints = hints or ClientHints()

        def step(grant, now):
            ctx = GateContext(
                now=now, hints=hints, document_id=document_id, window_tz=self.window_tz,
                portal_session=portal_session,
            )
            gate = gate_for(grant)
            reason = gate.check(grant, ctx) or gate.apply(grant, ctx, self.store)
            if reason is not None:
                return Decision.deny(reason, grant)
            return Decision.allow(grant, context=ctx)

        return self._run('verify', token, email, hints, step, strategy=strategy)

    # mfa two-phase protocol: pending_identity -> pending_code -> verified

    def submit_identity(self, token, email, hints=None) -> Decision:
        def step(grant, now):
            if grant.verification_state == PENDING_IDENTITY:
                grant.verification_state = PENDING_CODE
                grant.touch(now)
            return Decision.allow(grant, state=grant.verification_state)

        return self._run('submit_identity', token, email, hints, step, strategy='mfa')

    def submit_code(self, token, email, code, hints=None) -> Decision:
        hints = hints or ClientHints()

        def step(grant, now):
            if grant.verification_state == PENDING_IDENTITY:
                return Decision.deny(DenyReason.IDENTITY_NOT_CONFIRMED, grant)
            # every submission takes a slot; a correct code gives them back
            if not self.store.try_consume_quota(
                MfaGrant, grant.id, field='code_attempts', limit=self.max_code_attempts,
            ):
                return Decision.deny(DenyReason.TOO_MANY_ATTEMPTS, grant)
            if not codes_match(grant.verification_code, code):
                return Decision.deny(DenyReason.INVALID_CODE, grant)
            self.store.reset_counter(MfaGrant, grant.id, 'code_attempts')
            if grant.verification_state != VERIFIED:
                grant.is_verified = True
                grant.verification_state = VERIFIED
                grant.device_fingerprint = hints.device_fingerprint
                grant.touch(now)
            return Decision.allow(grant, state=VERIFIED)

        return self._run('submit_code', token, email, hints, step, strategy='mfa')

    # portal

    def portal_login(self, access_token, email, password, hints=None) -> Decision:
        hints = hints or ClientHints()

        def step(grant, now):
            if not check_password_hash(grant.password_hash, password or ''):
                return Decision.deny(DenyReason.INVALID_CREDENTIALS, grant)
            grant.last_login = now
            grant.touch(now)
            return Decision.allow(
                grant,
                must_change_password=not grant.password_changed,
                context=GateContext(now=now, hints=hints, window_tz=self.window_tz),
            )

        return self._run('portal_login', access_token, email, hints, step, strategy='portal')

    def change_portal_password(self, access_token, email, current_password, new_password, hints=None) -> Decision:
        def step(grant, now):
            if not check_password_hash(grant.password_hash, current_password or ''):
                return Decision.deny(DenyReason.INVALID_CREDENTIALS, grant)
            if len(new_password or '') < self.min_password_length or new_password == current_password:
                return Decision.deny(DenyReason.WEAK_PASSWORD, grant)
            grant.password_hash = generate_password_hash(new_password)
            grant.password_changed = True
            grant.touch(now)
            return Decision.allow(grant, must_change_password=False)

        return self._run('change_password', access_token, email, hints, step, strategy='portal')

    # shared pipeline

    def _base_checks(self, grant, email, now) -> DenyReason | None:
        if grant is None:
            return DenyReason.INVALID_TOKEN
        if grant.is_expired(now):
            # an inactive grant past its expiry keeps reporting "expired"
            if grant.is_active:
                self.store.deactivate(grant.id, now)
            return DenyReason.EXPIRED
        if not grant.is_active:
            return DenyReason.INVALID_TOKEN
        if not emails_match(grant.recipient_email, email):
            return DenyReason.IDENTITY_MISMATCH
        return None

    def _run(self, action, token, email, hints, step, strategy=None) -> Decision:
        hints = hints or ClientHints()
        now = self._now()
        grant = None
        grant_id = grant_strategy = None
        try:
            grant = self.store.find_by_token(token)
            if grant is not None and strategy is not None and grant.strategy != strategy:
                grant = None
            if grant is not None:
                grant_id, grant_strategy = grant.id, grant.strategy
            reason = self._base_checks(grant, email, now)
            decision = Decision.deny(reason, grant) if reason else step(grant, now)
            record_attempt(
                grant=grant,
                email=email,
                hints=hints,
                success=decision.allowed,
                reason=decision.reason.value if decision.reason else None,
                action=action,
                now=now,
                session=self.store.session,
            )
            self.store.session.commit()
        except SQLAlchemyError as exc:
            self.store.rollback()
            logger.error('%s failed on grant %s: %s', action, grant_id, exc.__class__.__name__)
            record_system_error(
                grant_id=grant_id, strategy=grant_strategy, email=email, hints=hints, action=action, now=now,
            )
            raise translate_store_error(exc) from exc

        if decision.allowed and decision.context is not None:
            decision.documents = gate_for(grant).documents(grant, decision.context)
        if decision.allowed:
            logger.info('%s allowed for grant %s', action, grant_id)
        else:
            logger.info('%s denied (%s) for grant %s', action, decision.reason.value, grant_id)
        return decision
