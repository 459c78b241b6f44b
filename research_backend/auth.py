# research_backend/auth.py
"""
Identity resolution, API key gate and per-user rate limiting.

Users are authenticated upstream (gateway / OAuth proxy); this service only
trusts the identity headers it forwards.

Env vars:
- MOCK_AUTH (default: true): skip the API key check, fall back to a dev identity
- API_KEYS: comma-separated allowed keys for the gateway
- RATE_LIMIT_PER_MINUTE (default: 60)
- DEV_USER_ID / DEV_USER_EMAIL: identity used when MOCK_AUTH is on and no header is sent
"""

import os
import time
import threading
from dataclasses import dataclass
from typing import Optional, Tuple, Dict, Set, Mapping

MOCK_AUTH = os.getenv("MOCK_AUTH", "true").lower() in ("1", "true", "yes")
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
DEV_USER_ID = os.getenv("DEV_USER_ID", "dev-user")
DEV_USER_EMAIL = os.getenv("DEV_USER_EMAIL", "") or None

API_KEY_HEADER = "x-api-key"
USER_ID_HEADER = "x-user-id"
USER_EMAIL_HEADER = "x-user-email"


def _load_api_keys() -> Set[str]:
    return {k.strip() for k in os.getenv("API_KEYS", "").split(",") if k.strip()}


API_KEYS = _load_api_keys()


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None


class InMemoryFixedWindowLimiter:
    """Thread-safe in-memory fixed-window rate limiter (per-process)."""

    def __init__(self, limit_per_minute: int = 60):
        self.limit = limit_per_minute
        self._store: Dict[str, Tuple[int, int]] = {}  # key -> (window_minute, count)
        self._lock = threading.Lock()

    def allow_request(self, key: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // 60
        with self._lock:
            wstart, count = self._store.get(key, (window, 0))
            if wstart != window:
                count = 0
            if count >= self.limit:
                return False, 0
            self._store[key] = (window, count + 1)
            return True, self.limit - (count + 1)

    def reset(self):
        """Reset all state (useful for tests)."""
        with self._lock:
            self._store.clear()


_rate_limiter = InMemoryFixedWindowLimiter(RATE_LIMIT_PER_MINUTE)


def is_key_allowed(api_key: Optional[str]) -> bool:
    """Check the gateway API key. If MOCK_AUTH=true, always returns True."""
    if MOCK_AUTH:
        return True
    if not api_key or not API_KEYS:
        return False
    return api_key in API_KEYS


def resolve_identity(headers: Mapping[str, str]) -> Optional[Identity]:
    """Return the caller's identity from forwarded headers, or None when absent."""
    user_id = (headers.get(USER_ID_HEADER) or "").strip()
    email = (headers.get(USER_EMAIL_HEADER) or "").strip() or None
    if user_id:
        return Identity(user_id=user_id, email=email)
    if MOCK_AUTH:
        return Identity(user_id=DEV_USER_ID, email=DEV_USER_EMAIL)
    return None


def check_rate_limit(user_id: str) -> Tuple[bool, Optional[int]]:
    """Check and consume the caller's per-minute quota. Returns (allowed, remaining)."""
    if MOCK_AUTH:
        return True, None
    return _rate_limiter.allow_request(user_id)


def get_limiter() -> InMemoryFixedWindowLimiter:
    """Return the current limiter instance (for testing)."""
    return _rate_limiter
