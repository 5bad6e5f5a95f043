import json
import time
from urllib.parse import urlparse

from flask import current_app

from ..errors import InvalidSignature
from .tokens import make_opaque, resolve_opaque, signed_claims


class BlobSigner:
    """Time-limited retrieval URLs for objects under ``BLOB_ROOT``."""

    def __init__(self, base_url: str, default_ttl_seconds: int = 3600):
        self.base_url = base_url.rstrip('/')
        self.default_ttl_seconds = default_ttl_seconds

    @classmethod
    def from_app(cls, app=None):
        cfg = (app or current_app).config
        return cls(cfg['BASE_URL'], cfg.get('BLOB_URL_TTL_MINUTES', 60) * 60)

    def sign(self, path: str, ttl_seconds: int | None = None, now: float | None = None) -> str:
        now = int(now if now is not None else time.time())
        exp = now + (ttl_seconds or self.default_ttl_seconds)
        opaque = make_opaque(json.dumps({'k': 'blob', 'p': path, 'e': exp}), ts=now)
        return f"{self.base_url}/files/{opaque}"

    def resolve(self, opaque: str, now: float | None = None) -> str:
        payload, _ = resolve_opaque(opaque)
        data = signed_claims(payload, 'blob')
        if not isinstance(data.get('p'), str) or not isinstance(data.get('e'), int):
            raise InvalidSignature('malformed')
        if (now if now is not None else time.time()) > data['e']:
            raise InvalidSignature('expired')
        return data['p']


def object_path(document_url: str) -> str | None:
    """Blob path for a stored document; None for documents hosted elsewhere."""
    parsed = urlparse(document_url or '')
    if parsed.scheme in ('http', 'https'):
        return None
    return (parsed.path or '').lstrip('/') or None


def with_download_urls(documents: list[dict], signer: BlobSigner) -> list[dict]:
    out = []
    for doc in documents:
        path = object_path(doc.get('url', ''))
        out.append({**doc, 'download_url': signer.sign(path) if path else doc.get('url')})
    return out
