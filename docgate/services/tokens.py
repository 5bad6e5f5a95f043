import base64
import hashlib
import hmac
import json
import secrets
import time

import jwt
from flask import current_app

from ..errors import InvalidSignature


def new_token() -> str:
    """URL-safe credential for links, portal access and QR payloads."""
    return secrets.token_urlsafe(32)


def new_otp(digits: int = 6) -> str:
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def new_temporary_password() -> str:
    return secrets.token_urlsafe(9)


def codes_match(expected: str, presented: str) -> bool:
    return hmac.compare_digest((expected or '').encode(), (presented or '').strip().encode())


# Opaque signed payload (HMAC)
def make_opaque(payload: str, ts: int | None = None) -> str:
    if ts is None:
        ts = int(time.time())
    msg = f"{ts}.{payload}".encode()
    sig = hmac.new(_signing_key(), msg, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(msg + sig).rstrip(b'=').decode()


def resolve_opaque(b64: str, max_age: int | None = None, now: float | None = None):
    """Return ``(payload, ts)``; raise InvalidSignature when tampered or stale."""
    try:
        data = base64.urlsafe_b64decode(b64 + '=' * (-len(b64) % 4))
    except (ValueError, TypeError):
        raise InvalidSignature('malformed')
    if len(data) <= 32:
        raise InvalidSignature('too short')
    msg, sig = data[:-32], data[-32:]
    exp_sig = hmac.new(_signing_key(), msg, hashlib.sha256).digest()
    if not hmac.compare_digest(sig, exp_sig):
        raise InvalidSignature('bad signature')
    ts_s, _, payload = msg.decode().partition('.')
    ts = int(ts_s)
    if max_age is not None and (now if now is not None else time.time()) - ts > max_age:
        raise InvalidSignature('stale')
    return payload, ts


def signed_claims(payload: str, purpose: str) -> dict:
    """Decode a JSON opaque payload and check it was signed for ``purpose``."""
    try:
        claims = json.loads(payload)
    except ValueError:
        raise InvalidSignature('malformed')
    if not isinstance(claims, dict) or claims.get('k') != purpose:
        raise InvalidSignature('wrong purpose')
    return claims


def _signing_key() -> bytes:
    return current_app.config['URL_SIGNING_KEY'].encode()


# Portal session JWT
def sign_portal_jwt(grant_id: str, jti: str, exp_ts: int, email: str, must_change_password: bool) -> str:
    payload = {
        'sub': grant_id,
        'jti': jti,
        'exp': exp_ts,
        'email': email,
        'scope': 'portal',
        'pwd_change': must_change_password,
    }
    key = current_app.config['JWT_PRIVATE_KEY']
    return jwt.encode(payload, key, algorithm=current_app.config['JWT_ALG'])


def decode_portal_jwt(token: str) -> dict:
    pub = current_app.config.get('JWT_PUBLIC_KEY')
    alg = current_app.config.get('JWT_ALG', 'RS256')
    payload = jwt.decode(token, pub, algorithms=[alg])
    if payload.get('scope') != 'portal':
        raise jwt.InvalidTokenError('wrong scope')
    return payload
