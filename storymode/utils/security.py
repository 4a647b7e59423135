from __future__ import annotations

import os
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Deque, Dict

from fastapi import HTTPException

from storymode.schemas.models import UserIdentity


def verify_api_key(provided_key: str | None) -> None:
    expected = os.getenv("API_AUTH_TOKEN")
    if expected:
        if provided_key != expected:
            raise HTTPException(status_code=401, detail="Invalid API token")
        return
    if provided_key is not None:
        raise HTTPException(status_code=401, detail="Invalid API token")


class RateLimiter:
    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = limit
        self.window = window_seconds
        self._calls: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def allow(self, client_id: str) -> None:
        now = time.time()
        with self._lock:
            bucket = self._calls[client_id]
            while bucket and bucket[0] <= now - self.window:
                bucket.popleft()
            if len(bucket) >= self.limit:
                raise HTTPException(status_code=429, detail="Rate limit exceeded")
            bucket.append(now)


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        limit = int(os.getenv("API_RATE_LIMIT", "60"))
        window = int(os.getenv("API_RATE_WINDOW", "60"))
        _rate_limiter = RateLimiter(limit=limit, window_seconds=window)
    return _rate_limiter


def resolve_identity(user_id: str | None, email: str | None, display_name: str | None) -> UserIdentity | None:
    """Build the signed-in identity forwarded by the authentication proxy, if any."""

    if not user_id or not email:
        return None
    return UserIdentity(id=user_id.strip(), email=email.strip(), display_name=(display_name or "").strip() or None)
