from dataclasses import dataclass
import hashlib
import os

from flask import request


@dataclass(frozen=True)
class ClientHints:
    """Opaque client strings, recorded for audit only."""

    ip_address: str | None = None
    user_agent: str | None = None
    device_fingerprint: str | None = None

    def device_info(self) -> dict:
        return {'ip': self.ip_address, 'user_agent': self.user_agent, 'fingerprint': self.device_fingerprint}


def fingerprint_device() -> tuple[str, tuple | None]:
    ua = request.headers.get('User-Agent', '')
    tz = request.headers.get('Sec-CH-Timezone', '') or request.args.get('tz', '')
    plat = request.headers.get('Sec-CH-UA-Platform', '') or request.args.get('platform', '')
    lang = request.headers.get('Accept-Language', '')
    entropy = request.cookies.get('did') or os.urandom(8).hex()
    raw = f"{ua}|{tz}|{plat}|{lang}|{entropy}"
    did = hashlib.sha256(raw.encode()).hexdigest()[:32]
    resp_cookie = None if request.cookies.get('did') else (
        'did', entropy, {'httponly': True, 'samesite': 'Lax', 'secure': True, 'max_age': 31536000}
    )
    return did, resp_cookie


def client_hints() -> tuple[ClientHints, tuple | None]:
    """Collect hints from the current request; a client-supplied fingerprint wins."""
    did, resp_cookie = fingerprint_device()
    body = request.get_json(silent=True) or {}
    fingerprint = request.headers.get('X-Device-Fingerprint') or body.get('device_fingerprint') or did
    hints = ClientHints(
        ip_address=request.remote_addr or '0.0.0.0',
        user_agent=request.headers.get('User-Agent'),
        device_fingerprint=str(fingerprint)[:128],
    )
    return hints, resp_cookie
