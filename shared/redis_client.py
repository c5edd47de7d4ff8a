"""
redis_client.py – lazy Redis connection + helpers
=================================================

• 100 % lazy: first call triggers connect; a few retries, then the
  connection error reaches the caller.
• `heartbeat(service)` once per loop; the control panel reports these.
• `RedisEventSink` mirrors engine events into Redis so an external
  status/reporting layer can read them without talking to the bot.

Redis is optional: leave `REDIS_URL` empty and nothing here is touched.
"""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Optional

import redis

from .config import env
from .constants import (
    EVENTS_MAX_LEN,
    KEY_EVENTS,
    KEY_HEARTBEAT,
    KEY_SESSIONS_CLOSED,
)
from .logging import get_logger

# ───── CONFIG ──────────────────────────────────────────────────────────
REDIS_URL = env("REDIS_URL", "")
CONNECT_RETRIES = env("REDIS_CONNECT_RETRIES", 3, int)
log = get_logger("shared.redis")


# ───── LAZY SINGLETON ─────────────────────────────────────────────────
class _LazyRedis:
    """Proxy object that connects on first attribute access."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Optional[redis.Redis] = None

    def __getattr__(self, name: str) -> Callable[..., Any]:  # noqa: D401
        if self._client is None:
            self._connect()
        return getattr(self._client, name)

    def _connect(self) -> None:
        for attempt in range(1, CONNECT_RETRIES + 1):
            try:
                client = redis.Redis.from_url(
                    self._url,
                    decode_responses=True,
                    socket_timeout=2,
                )
                client.ping()
                self._client = client
                log.info("Connected to Redis at %s", self._url)
                return
            except redis.RedisError as exc:
                log.warning("Redis unavailable (attempt %d/%d) – %s",
                            attempt, CONNECT_RETRIES, exc)
                if attempt < CONNECT_RETRIES:
                    time.sleep(1)
        raise redis.ConnectionError(f"cannot reach Redis at {self._url}")


_singleton: Optional[_LazyRedis] = None


def get_redis() -> Optional[_LazyRedis]:
    """Shared lazy client, or None when REDIS_URL is not configured."""
    global _singleton
    if not REDIS_URL:
        return None
    if _singleton is None:
        _singleton = _LazyRedis(REDIS_URL)
    return _singleton


# ───── HELPER FUNCTIONS ───────────────────────────────────────────────
def heartbeat(service: str, client: Any = None) -> None:
    """Store current epoch-seconds in `heartbeat:<service>`."""
    rds = client if client is not None else get_redis()
    if rds is None:
        return
    try:
        rds.set(KEY_HEARTBEAT.format(service), time.time())
    except redis.RedisError as exc:
        log.error("heartbeat failed – %s", exc)


def last_heartbeat(service: str, client: Any = None) -> float | None:
    rds = client if client is not None else get_redis()
    if rds is None:
        return None
    try:
        val = rds.get(KEY_HEARTBEAT.format(service))
    except redis.RedisError as exc:
        log.error("heartbeat read failed – %s", exc)
        return None
    return float(val) if val else None


class RedisEventSink:
    """
    Append every engine event to `live:events` (capped list) and archive
    finished sessions on `live:sessions:closed`.  Redis trouble is logged
    and swallowed – telemetry must never stall the trading loop.
    """

    def __init__(self, client: Any = None, max_len: int = EVENTS_MAX_LEN) -> None:
        self._rds = client if client is not None else get_redis()
        self._max_len = max_len

    def __call__(self, event: Any) -> None:
        if self._rds is None:
            return
        payload = json.dumps(event.to_dict(), default=str)
        try:
            self._rds.rpush(KEY_EVENTS, payload)
            self._rds.ltrim(KEY_EVENTS, -self._max_len, -1)
            if event.kind == "session_ended":
                self._rds.rpush(KEY_SESSIONS_CLOSED, payload)
        except redis.RedisError as exc:
            log.warning("event push failed – %s", exc)
