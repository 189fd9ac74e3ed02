"""Simple in-memory rate limiting for payment initiation."""

import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends

from botbilling.core.auth import AuthUser, get_current_user
from botbilling.core.config import settings
from botbilling.core.errors import RateLimitError


class FixedWindowLimiter:
    def __init__(self, limit_per_minute: int, time_fn: Callable[[], float]):
        self.limit = limit_per_minute
        self.time_fn = time_fn
        self.windows: Dict[str, Tuple[float, int]] = {}

    def allow(self, key: str) -> bool:
        now = self.time_fn()
        window_start, count = self.windows.get(key, (now, 0))
        if now - window_start >= 60:
            window_start, count = now, 0
        if count >= self.limit:
            self.windows[key] = (window_start, count)
            return False
        self.windows[key] = (window_start, count + 1)
        return True

    def reset(self) -> None:
        self.windows.clear()


_initiate_limiter: Optional[FixedWindowLimiter] = None


def get_initiate_limiter() -> FixedWindowLimiter:
    global _initiate_limiter
    if _initiate_limiter is None:
        _initiate_limiter = FixedWindowLimiter(settings.INITIATE_RATE_LIMIT_PER_MINUTE, time.monotonic)
    return _initiate_limiter


def enforce_initiate_rate_limit(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    """FastAPI dependency: at most N payment initiations per minute per user."""
    limiter = get_initiate_limiter()
    if not limiter.allow(f"initiate:{user.user_id}"):
        raise RateLimitError("Too many payment attempts. Please wait a minute and try again.")
    return user
