import time
import uuid

import jwt
from flask import Blueprint, current_app, jsonify, request

from .errors import DenyReason
from .services.blobstore import BlobSigner, with_download_urls
from .services.device import client_hints
from .services.rate_limit import check_rate_ip, forget_jti, has_jti, remember_jti
from .services.store import GrantStore
from .services.tokens import decode_portal_jwt, sign_portal_jwt
from .services.verification import VerificationEngine

bp = Blueprint('api', __name__)

STATUS_BY_REASON = {
    DenyReason.INVALID_TOKEN: 401,
    DenyReason.INVALID_CODE: 401,
    DenyReason.INVALID_CREDENTIALS: 401,
    DenyReason.EXPIRED: 410,
    DenyReason.IDENTITY_MISMATCH: 403,
    DenyReason.OUTSIDE_WINDOW: 403,
    DenyReason.VERIFICATION_REQUIRED: 403,
    DenyReason.IP_NOT_ALLOWED: 403,
    DenyReason.IDENTITY_NOT_CONFIRMED: 403,
    DenyReason.WEAK_PASSWORD: 400,
    DenyReason.QUOTA_EXCEEDED: 429,
    DenyReason.TOO_MANY_ATTEMPTS: 429,
    DenyReason.NOT_YET_UNLOCKED: 423,
    DenyReason.DOCUMENT_UNAVAILABLE: 404,
}


def decision_response(decision, resp_cookie=None, extra=None):
    body = decision.as_dict()
    if decision.allowed and decision.documents:
        body['documents'] = with_download_urls(decision.documents, BlobSigner.from_app())
    if extra:
        body.update(extra)
    status = 200 if decision.allowed else STATUS_BY_REASON.get(decision.reason, 403)
    resp = jsonify(body)
    resp.status_code = status
    resp.headers['Cache-Control'] = 'no-store'
    if resp_cookie:
        name, value, opts = resp_cookie
        resp.set_cookie(name, value, **opts)
    return resp


@bp.before_request
def limit_per_ip():
    check_rate_ip(request.remote_addr or '0.0.0.0')


@bp.post('/verify/<token>')
def verify(token: str):
    data = request.get_json(silent=True) or {}
    hints, resp_cookie = client_hints()
    session, _ = _bearer_session()
    decision = VerificationEngine.from_app().verify(
        token, data.get('identity'), hints, document_id=data.get('document_id'), portal_session=session,
    )
    return decision_response(decision, resp_cookie)


@bp.post('/mfa/<token>/identity')
def mfa_identity(token: str):
    data = request.get_json(silent=True) or {}
    hints, resp_cookie = client_hints()
    decision = VerificationEngine.from_app().submit_identity(token, data.get('identity'), hints)
    return decision_response(decision, resp_cookie)


@bp.post('/mfa/<token>/code')
def mfa_code(token: str):
    data = request.get_json(silent=True) or {}
    hints, resp_cookie = client_hints()
    decision = VerificationEngine.from_app().submit_code(token, data.get('identity'), data.get('code'), hints)
    return decision_response(decision, resp_cookie)


@bp.post('/portal/login')
def portal_login():
    data = request.get_json(silent=True) or {}
    hints, resp_cookie = client_hints()
    decision = VerificationEngine.from_app().portal_login(
        data.get('access_token'), data.get('identity'), data.get('password'), hints,
    )
    extra = _portal_session(decision.grant, decision.must_change_password) if decision.allowed else None
    return decision_response(decision, resp_cookie, extra)


@bp.post('/portal/password')
def portal_password():
    session, error = _bearer_session()
    if session is None:
        return jsonify({'error': error}), 401

    data = request.get_json(silent=True) or {}
    grant = GrantStore().find_by_token(data.get('access_token'))
    if grant is None or grant.id != session.get('sub'):
        return jsonify({'error': 'wrong_portal'}), 403

    hints, resp_cookie = client_hints()
    decision = VerificationEngine.from_app().change_portal_password(
        data.get('access_token'), data.get('identity'),
        data.get('current_password'), data.get('new_password'), hints,
    )
    extra = None
    if decision.allowed:
        # the old session carried pwd_change=true; replace it
        forget_jti(session['jti'])
        extra = _portal_session(decision.grant, False)
    return decision_response(decision, resp_cookie, extra)


def _bearer_session():
    """Portal session claims from the Authorization header, as (claims, None) or (None, error)."""
    auth = request.headers.get('Authorization', '')
    if not auth.startswith('Bearer '):
        return None, 'missing_token'
    try:
        session = decode_portal_jwt(auth.split(' ', 1)[1])
    except jwt.ExpiredSignatureError:
        return None, 'expired'
    except jwt.InvalidTokenError:
        return None, 'invalid'
    if not has_jti(session.get('jti', '')):
        return None, 'revoked'
    return session, None


def _portal_session(grant, must_change_password) -> dict:
    ttl = current_app.config['PORTAL_SESSION_MINUTES'] * 60
    exp_ts = int(time.time()) + ttl
    jti = uuid.uuid4().hex
    token = sign_portal_jwt(grant.id, jti, exp_ts, grant.recipient_email, bool(must_change_password))
    remember_jti(jti, ttl + 60)
    return {'session_token': token, 'session_expires_at': exp_ts}
