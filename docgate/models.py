from datetime import datetime, timezone
import os
import time
import uuid

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import synonym, validates


def _gen_bigint_id():
    """Generate a sortable 64-bit int: millis timestamp << 16 | 16 bits randomness."""
    return (int(time.time() * 1000) << 16) | int.from_bytes(os.urandom(2), 'big')


def _gen_grant_id():
    return uuid.uuid4().hex


def utcnow():
    """Naive UTC; every timestamp column in this schema is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


db = SQLAlchemy()

# BIGINT primary keys only autoincrement on SQLite when declared as INTEGER
_AUTO_BIGINT = db.BigInteger().with_variant(db.Integer, 'sqlite')

STRATEGIES = ('link', 'mfa', 'blockchain', 'progressive', 'portal', 'qr')


class Order(db.Model):
    __tablename__ = 'orders'
    id = db.Column(db.String(64), primary_key=True, default=_gen_grant_id)
    reference = db.Column(db.String(255))
    customer_email = db.Column(db.String(320))
    customer_name = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)

    grants = db.relationship(
        'Grant', back_populates='order', cascade='all, delete-orphan', passive_deletes=True,
    )


class Grant(db.Model):
    """Common lifecycle shared by every delivery strategy."""

    __tablename__ = 'grants'
    id = db.Column(db.String(32), primary_key=True, default=_gen_grant_id)
    strategy = db.Column(db.String(16), nullable=False)
    token = db.Column(db.String(128), nullable=False, unique=True)
    recipient_email = db.Column(db.String(320), nullable=False, index=True)
    order_id = db.Column(db.String(64), db.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    order = db.relationship('Order', back_populates='grants')

    __mapper_args__ = {'polymorphic_on': strategy}

    @validates('recipient_email')
    def _normalize_email(self, key, value):
        return (value or '').strip().lower()

    @validates('is_active')
    def _active_is_one_way(self, key, value):
        if self.is_active is False and value:
            raise ValueError('an inactive grant cannot be reactivated')
        return value

    def is_expired(self, now):
        return self.expires_at < now

    def touch(self, now):
        self.updated_at = now


class _ItemMixin:
    id = db.Column(db.BigInteger, primary_key=True, default=_gen_bigint_id)
    position = db.Column(db.Integer, nullable=False, default=0)
    document_id = db.Column(db.String(64), nullable=False)
    document_name = db.Column(db.String(255), nullable=False)
    document_url = db.Column(db.Text, nullable=False)
    document_category = db.Column(db.String(64), nullable=False, default='general')
    review_stage = db.Column(db.String(64), nullable=False, default='default')
    download_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def as_document(self):
        return {
            'id': self.document_id,
            'name': self.document_name,
            'url': self.document_url,
            'category': self.document_category,
            'review_stage': self.review_stage,
            'download_count': self.download_count,
        }


class LinkGrant(Grant):
    """Single-factor email link: one grant per document."""

    __tablename__ = 'link_grants'
    id = db.Column(db.String(32), db.ForeignKey('grants.id', ondelete='CASCADE'), primary_key=True)
    document_id = db.Column(db.String(64), nullable=False)
    document_name = db.Column(db.String(255), nullable=False)
    document_url = db.Column(db.Text, nullable=False)
    download_count = db.Column(db.Integer, nullable=False, default=0)
    max_downloads = db.Column(db.Integer, nullable=False, default=5)

    __mapper_args__ = {'polymorphic_identity': 'link', 'polymorphic_load': 'inline'}

    def as_document(self):
        return {'id': self.document_id, 'name': self.document_name, 'url': self.document_url}


class MfaGrant(Grant):
    __tablename__ = 'mfa_grants'
    id = db.Column(db.String(32), db.ForeignKey('grants.id', ondelete='CASCADE'), primary_key=True)
    verification_code = db.Column(db.String(12), nullable=False)
    verification_state = db.Column(db.String(24), nullable=False, default='pending_identity')
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    code_attempts = db.Column(db.Integer, nullable=False, default=0)
    device_fingerprint = db.Column(db.String(128))
    allowed_ip_addresses = db.Column(db.JSON)
    download_window_start = db.Column(db.Integer, nullable=False, default=9)
    download_window_end = db.Column(db.Integer, nullable=False, default=18)
    download_count = db.Column(db.Integer, nullable=False, default=0)
    max_downloads = db.Column(db.Integer, nullable=False, default=3)

    items = db.relationship(
        'SessionDocument', cascade='all, delete-orphan', passive_deletes=True,
        order_by='SessionDocument.position',
    )

    __mapper_args__ = {'polymorphic_identity': 'mfa', 'polymorphic_load': 'inline'}

    @validates('download_window_start', 'download_window_end')
    def _check_hour(self, key, value):
        if not 0 <= int(value) <= 23:
            raise ValueError(f'{key} must be an hour between 0 and 23')
        return int(value)


class SessionDocument(_ItemMixin, db.Model):
    __tablename__ = 'session_documents'
    session_id = db.Column(
        db.String(32), db.ForeignKey('mfa_grants.id', ondelete='CASCADE'), nullable=False, index=True,
    )


class BlockchainGrant(Grant):
    __tablename__ = 'blockchain_grants'
    id = db.Column(db.String(32), db.ForeignKey('grants.id', ondelete='CASCADE'), primary_key=True)
    blockchain_tx_id = db.Column(db.String(128), nullable=False, unique=True)
    proof_of_delivery = db.Column(db.Text, nullable=False)
    document_hashes = db.Column(db.JSON, nullable=False)
    documents = db.Column(db.JSON, nullable=False)

    __mapper_args__ = {'polymorphic_identity': 'blockchain', 'polymorphic_load': 'inline'}

    @validates('blockchain_tx_id')
    def _tx_id_is_immutable(self, key, value):
        if self.blockchain_tx_id is not None and value != self.blockchain_tx_id:
            raise ValueError('blockchain_tx_id cannot change once recorded')
        return value


class ProgressiveGrant(Grant):
    __tablename__ = 'progressive_grants'
    id = db.Column(db.String(32), db.ForeignKey('grants.id', ondelete='CASCADE'), primary_key=True)

    unlocks = db.relationship(
        'UnlockEntry', cascade='all, delete-orphan', passive_deletes=True,
        order_by='UnlockEntry.unlock_time',
    )

    __mapper_args__ = {'polymorphic_identity': 'progressive', 'polymorphic_load': 'inline'}


class UnlockEntry(db.Model):
    __tablename__ = 'progressive_unlocks'
    id = db.Column(db.BigInteger, primary_key=True, default=_gen_bigint_id)
    grant_id = db.Column(
        db.String(32), db.ForeignKey('progressive_grants.id', ondelete='CASCADE'), nullable=False, index=True,
    )
    review_stage = db.Column(db.String(64), nullable=False)
    unlock_delay_hours = db.Column(db.Integer, nullable=False, default=0)
    unlock_time = db.Column(db.DateTime, nullable=False, index=True)
    documents = db.Column(db.JSON, nullable=False)
    is_unlocked = db.Column(db.Boolean, nullable=False, default=False)
    unlocked_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    @validates('is_unlocked')
    def _unlock_is_one_way(self, key, value):
        if self.is_unlocked and not value:
            raise ValueError('an unlocked stage cannot be locked again')
        return value

    def is_visible(self, now):
        return bool(self.is_unlocked) or self.unlock_time <= now

    def as_schedule(self):
        return {
            'stage': self.review_stage,
            'unlock_time': self.unlock_time.isoformat(),
            'is_unlocked': bool(self.is_unlocked),
            'document_count': len(self.documents or []),
        }


class PortalGrant(Grant):
    __tablename__ = 'portal_grants'
    id = db.Column(db.String(32), db.ForeignKey('grants.id', ondelete='CASCADE'), primary_key=True)
    customer_name = db.Column(db.String(255), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    password_changed = db.Column(db.Boolean, nullable=False, default=False)
    last_login = db.Column(db.DateTime)

    access_token = synonym('token')

    items = db.relationship(
        'PortalDocument', cascade='all, delete-orphan', passive_deletes=True,
        order_by='PortalDocument.position',
    )

    __mapper_args__ = {'polymorphic_identity': 'portal', 'polymorphic_load': 'inline'}


class PortalDocument(_ItemMixin, db.Model):
    __tablename__ = 'portal_documents'
    portal_id = db.Column(
        db.String(32), db.ForeignKey('portal_grants.id', ondelete='CASCADE'), nullable=False, index=True,
    )
    is_available = db.Column(db.Boolean, nullable=False, default=True)


class QrGrant(Grant):
    __tablename__ = 'qr_grants'
    id = db.Column(db.String(32), db.ForeignKey('grants.id', ondelete='CASCADE'), primary_key=True)
    documents = db.Column(db.JSON, nullable=False)
    is_scanned = db.Column(db.Boolean, nullable=False, default=False)
    scanned_at = db.Column(db.DateTime)
    device_info = db.Column(db.JSON)

    verification_token = synonym('token')

    __mapper_args__ = {'polymorphic_identity': 'qr', 'polymorphic_load': 'inline'}

    @validates('is_scanned')
    def _scan_is_one_way(self, key, value):
        if self.is_scanned and not value:
            raise ValueError('a scanned QR grant cannot be unscanned')
        return value


class AuditEntry(db.Model):
    # grant_id deliberately carries no FK: audit rows outlive the grant they describe
    __tablename__ = 'download_attempts'
    id = db.Column(_AUTO_BIGINT, primary_key=True, autoincrement=True)
    grant_id = db.Column(db.String(32), index=True)
    strategy = db.Column(db.String(16))
    action = db.Column(db.String(32), nullable=False, default='verify')
    attempted_email = db.Column(db.String(320), index=True)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.Text)
    device_fingerprint = db.Column(db.String(128))
    success = db.Column(db.Boolean, nullable=False)
    failure_reason = db.Column(db.String(64))
    attempted_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class Notification(db.Model):
    __tablename__ = 'notification_outbox'
    id = db.Column(_AUTO_BIGINT, primary_key=True, autoincrement=True)
    grant_id = db.Column(db.String(32), index=True)
    to_address = db.Column(db.String(320), nullable=False)
    template = db.Column(db.String(64), nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String(16), nullable=False, default='pending', index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    sent_at = db.Column(db.DateTime)
