"""
config.py – centralised env-var handling
=======================================

• Loads the first `.env` file it finds (cwd or /app) exactly **once**.
• Exposes `ENV` – a dict-like object that also supports attribute access.
• `env(key, default=None, cast=None)` helper for one-off lookups
  with automatic type-casting (int, float, bool).
• `env_list(key, default, cast)` for comma-separated values such as
  stake sequences (`0.35, 0.45, 0.90`).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from dotenv import load_dotenv

# ───── locate & load .env (first one wins) ────────────────────────────
for candidate in (Path.cwd() / ".env", Path("/app/.env")):
    if candidate.is_file():
        load_dotenv(dotenv_path=candidate, override=False)
        break


def _cast(val: Any, cast: Callable[[Any], Any]) -> Any:
    if cast is bool:
        return str(val).strip().lower() in ("1", "true", "yes", "y")
    return cast(val)


# ───── ENV proxy object ───────────────────────────────────────────────
class _Env(dict):
    """Attr-style access to `os.environ` while staying dict-compatible."""

    # attribute → getenv
    def __getattr__(self, item: str) -> str | None:  # noqa: D401
        return os.getenv(item)

    def __getitem__(self, key: str) -> str:
        return os.environ[key]

    # empty strings count as "unset" so a blank `.env` line keeps the default
    def get(self, key: str, default: Any = None, cast: Optional[type] = None) -> Any:  # noqa: D401
        val = os.getenv(key)
        if val is None or val.strip() == "":
            return default
        if cast is not None:
            try:
                return _cast(val, cast)
            except (ValueError, TypeError):
                return default
        return val


ENV: _Env = _Env(os.environ)  # public alias


def env(key: str, default: Any = None, cast: Optional[type] = None) -> Any:
    """Shortcut for `ENV.get(key, default, cast)`."""
    return ENV.get(key, default, cast)


def env_list(key: str, default: Sequence[Any] = (), cast: type = str) -> List[Any]:
    """
    Comma-separated env var → list.  Unlike `env()` a bad element is
    *not* swallowed: the ValueError reaches the caller so a typo in a
    stake ladder fails at start-up.
    """
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return list(default)
    return [_cast(part.strip(), cast) for part in raw.split(",") if part.strip()]


__all__ = ["ENV", "env", "env_list"]
