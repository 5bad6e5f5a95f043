"""Strategy-specific gates layered over the common grant lifecycle checks.

``check`` runs after expiry and identity have passed and returns the first
failing reason, or None. ``apply`` runs inside the ALLOW transaction and may
still turn the decision into a denial when a conditional update loses a race.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from ..errors import DenyReason
from ..models import (
    LinkGrant,
    MfaGrant,
    PortalDocument,
    QrGrant,
    SessionDocument,
    UnlockEntry,
)
from .device import ClientHints


@dataclass
class GateContext:
    now: datetime
    hints: ClientHints
    document_id: str | None = None
    window_tz: str = 'UTC'
    # decoded portal session claims, when the caller presented one
    portal_session: dict | None = None

    def local_hour(self) -> int:
        return self.now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(self.window_tz)).hour


def hour_in_window(hour: int, start: int, end: int) -> bool:
    # inclusive on both ends; start > end means the window wraps past midnight
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end


class GrantGate:
    def check(self, grant, ctx: GateContext) -> DenyReason | None:
        return None

    def apply(self, grant, ctx: GateContext, store) -> DenyReason | None:
        return None

    def documents(self, grant, ctx: GateContext) -> list[dict]:
        return []


class LinkGate(GrantGate):
    def check(self, grant, ctx):
        if ctx.document_id and ctx.document_id != grant.document_id:
            return DenyReason.DOCUMENT_UNAVAILABLE
        if grant.download_count >= grant.max_downloads:
            return DenyReason.QUOTA_EXCEEDED
        return None

    def apply(self, grant, ctx, store):
        if not store.try_consume_quota(LinkGrant, grant.id, now=ctx.now):
            return DenyReason.QUOTA_EXCEEDED
        return None

    def documents(self, grant, ctx):
        return [grant.as_document()]


class MfaGate(GrantGate):
    def check(self, grant, ctx):
        if not grant.is_verified:
            return DenyReason.VERIFICATION_REQUIRED
        allowed_ips = grant.allowed_ip_addresses or []
        if allowed_ips and ctx.hints.ip_address not in allowed_ips:
            return DenyReason.IP_NOT_ALLOWED
        if not hour_in_window(ctx.local_hour(), grant.download_window_start, grant.download_window_end):
            return DenyReason.OUTSIDE_WINDOW
        if grant.download_count >= grant.max_downloads:
            return DenyReason.QUOTA_EXCEEDED
        if ctx.document_id and _find_item(grant.items, ctx.document_id) is None:
            return DenyReason.DOCUMENT_UNAVAILABLE
        return None

    def apply(self, grant, ctx, store):
        if not store.try_consume_quota(MfaGrant, grant.id, now=ctx.now):
            return DenyReason.QUOTA_EXCEEDED
        item = _find_item(grant.items, ctx.document_id)
        if item is not None:
            store.increment(SessionDocument, item.id)
        return None

    def documents(self, grant, ctx):
        return _selected(grant.items, ctx.document_id)


class ProgressiveGate(GrantGate):
    def check(self, grant, ctx):
        visible = [entry for entry in grant.unlocks if entry.is_visible(ctx.now)]
        if ctx.document_id:
            entry = _stage_of(grant.unlocks, ctx.document_id)
            if entry is None:
                return DenyReason.DOCUMENT_UNAVAILABLE
            if not entry.is_visible(ctx.now):
                return DenyReason.NOT_YET_UNLOCKED
        if not visible:
            return DenyReason.NOT_YET_UNLOCKED
        return None

    def apply(self, grant, ctx, store):
        # lazy counterpart of the unlock sweep
        for entry in grant.unlocks:
            if not entry.is_unlocked and entry.unlock_time <= ctx.now:
                store.set_once(UnlockEntry, entry.id, 'is_unlocked', {'unlocked_at': ctx.now})
        return None

    def documents(self, grant, ctx):
        docs = []
        for entry in grant.unlocks:
            if not entry.is_visible(ctx.now):
                continue
            for doc in entry.documents or []:
                if ctx.document_id and doc.get('id') != ctx.document_id:
                    continue
                docs.append({**doc, 'review_stage': entry.review_stage})
        return docs


class PortalGate(GrantGate):
    def check(self, grant, ctx):
        session = ctx.portal_session or {}
        if session.get('sub') != grant.id:
            return DenyReason.INVALID_CREDENTIALS
        if ctx.document_id:
            item = _find_item(grant.items, ctx.document_id)
            if item is None or not item.is_available:
                return DenyReason.DOCUMENT_UNAVAILABLE
        return None

    def apply(self, grant, ctx, store):
        item = _find_item(grant.items, ctx.document_id)
        if item is not None:
            store.increment(PortalDocument, item.id)
        return None

    def documents(self, grant, ctx):
        return _selected(grant.items, ctx.document_id, available_only=True)


class QrGate(GrantGate):
    def check(self, grant, ctx):
        if ctx.document_id and not _filter_payload(grant.documents, ctx.document_id):
            return DenyReason.DOCUMENT_UNAVAILABLE
        return None

    def apply(self, grant, ctx, store):
        store.set_once(
            QrGrant, grant.id, 'is_scanned',
            {'scanned_at': ctx.now, 'device_info': ctx.hints.device_info()},
            now=ctx.now,
        )
        return None

    def documents(self, grant, ctx):
        return _filter_payload(grant.documents, ctx.document_id)


class BlockchainGate(GrantGate):
    def check(self, grant, ctx):
        if ctx.document_id and not _filter_payload(grant.documents, ctx.document_id):
            return DenyReason.DOCUMENT_UNAVAILABLE
        return None

    def documents(self, grant, ctx):
        docs = [
            {**doc, 'hash': digest}
            for doc, digest in zip(grant.documents or [], grant.document_hashes or [])
        ]
        return _filter_payload(docs, ctx.document_id)


GATES: dict[str, GrantGate] = {
    'link': LinkGate(),
    'mfa': MfaGate(),
    'progressive': ProgressiveGate(),
    'portal': PortalGate(),
    'qr': QrGate(),
    'blockchain': BlockchainGate(),
}


def gate_for(grant) -> GrantGate:
    return GATES.get(grant.strategy, GrantGate())


def _find_item(items, document_id):
    if not document_id:
        return None
    return next((item for item in items if item.document_id == document_id), None)


def _stage_of(unlocks, document_id):
    for entry in unlocks:
        if any(doc.get('id') == document_id for doc in entry.documents or []):
            return entry
    return None


def _selected(items, document_id, available_only=False):
    docs = []
    for item in items:
        if available_only and not item.is_available:
            continue
        if document_id and item.document_id != document_id:
            continue
        docs.append(item.as_document())
    return docs


def _filter_payload(docs, document_id):
    if not document_id:
        return list(docs or [])
    return [doc for doc in docs or [] if doc.get('id') == document_id]
