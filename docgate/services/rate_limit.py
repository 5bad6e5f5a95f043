import logging
import os
import threading
import time

import redis
from flask import current_app

from ..errors import RateLimited

logger = logging.getLogger(__name__)

_r = None
_lock = threading.Lock()


class _MemStore:
    def __init__(self):
        self._data = {}
        self._exp = {}
        self._lock = threading.Lock()

    def _cleanup(self):
        now = time.time()
        expired = [k for k, ts in self._exp.items() if ts <= now]
        for k in expired:
            self._data.pop(k, None)
            self._exp.pop(k, None)

    def incr(self, key):
        with self._lock:
            self._cleanup()
            v = int(self._data.get(key, '0')) + 1
            self._data[key] = str(v)
            return v

    def expire(self, key, ttl):
        with self._lock:
            self._cleanup()
            self._exp[key] = time.time() + ttl

    def setex(self, key, ttl, value):
        with self._lock:
            self._cleanup()
            self._data[key] = value
            self._exp[key] = time.time() + ttl

    def exists(self, key):
        with self._lock:
            self._cleanup()
            return 1 if key in self._data else 0

    def delete(self, key):
        with self._lock:
            self._exp.pop(key, None)
            return 1 if self._data.pop(key, None) is not None else 0


def _use_redis():
    flag = current_app.config.get('USE_REDIS', os.environ.get('USE_REDIS', '1'))
    return str(flag).lower() not in ('0', 'false', 'no')


def r():
    global _r
    if _r is not None:
        return _r
    with _lock:
        if _r is not None:
            return _r
        url = current_app.config.get('REDIS_URL')
        if _use_redis() and url:
            try:
                client = redis.from_url(url, decode_responses=True)
                # one ping; fall back to memory when redis is down at startup
                client.ping()
                _r = client
                return _r
            except redis.RedisError as exc:
                logger.warning('redis unavailable (%s), using in-memory store', exc.__class__.__name__)
        _r = _MemStore()
        return _r


def reset():
    """Forget the selected backend (the next call picks it again)."""
    global _r
    with _lock:
        _r = None


def check_rate_ip(ip: str, limit=None, window=60):
    if limit is None:
        limit = current_app.config.get('RATE_LIMIT_PER_MINUTE', 20)
    k = f"rl:ip:{ip}:{int(time.time() // window)}"
    v = r().incr(k)
    r().expire(k, window)
    if v > limit:
        logger.warning('rate limit exceeded for %s', ip)
        raise RateLimited('rate exceeded')


# portal session jti: present while the session is valid, removed on password change

def remember_jti(jti: str, ttl: int):
    r().setex(f"jti:{jti}", ttl, '1')


def has_jti(jti: str) -> bool:
    return r().exists(f"jti:{jti}") == 1


def forget_jti(jti: str):
    r().delete(f"jti:{jti}")
