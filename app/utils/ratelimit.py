"""
app/utils/ratelimit.py
──────────────────────
Sliding-window attempt limiter.

One RateLimiter instance is created per Flask app (see create_app) and
stored in app.extensions, so every app (and every test) gets its own
state. Nothing here is module-level.

Rules
─────
1. Attempts are recorded per key (e.g. "login:10.0.0.7").
2. Attempts older than `window_seconds` fall out of the window.
3. The attempt that would exceed `max_attempts` is refused and the key is
   blocked for `block_seconds`.
4. A block that has expired clears the key's history entirely.
"""
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


@dataclass
class RateLimitResult:
    allowed:        bool
    remaining:      int
    retry_after:    Optional[float]   # seconds, only set when refused
    message:        str = ''


@dataclass
class _Entry:
    attempts:      List[float] = field(default_factory=list)
    blocked_until: Optional[float] = None


def format_duration(seconds: float) -> str:
    """Render a wait time as '45 seconds' / '5 minutes'."""
    secs = math.ceil(seconds)
    if secs < 60:
        return f"{secs} second{'s' if secs != 1 else ''}"
    minutes = math.ceil(secs / 60)
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


class RateLimiter:
    """In-memory attempt limiter with an explicit lifecycle (reset / clear)."""

    def __init__(self, max_attempts: int = 3, window_seconds: float = 60,
                 block_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.max_attempts   = max_attempts
        self.window_seconds = window_seconds
        self.block_seconds  = block_seconds
        self._clock         = clock
        self._entries: Dict[str, _Entry] = {}

    def check(self, key: str) -> RateLimitResult:
        """Record an attempt for `key` and report whether it is allowed."""
        now   = self._clock()
        entry = self._entries.setdefault(key, _Entry())

        if entry.blocked_until is not None:
            if now < entry.blocked_until:
                wait = entry.blocked_until - now
                return RateLimitResult(
                    allowed=False, remaining=0, retry_after=wait,
                    message=f'Too many attempts. Please try again in {format_duration(wait)}.',
                )
            # Block expired, start over
            entry.blocked_until = None
            entry.attempts = []

        entry.attempts = [t for t in entry.attempts if now - t < self.window_seconds]

        if len(entry.attempts) >= self.max_attempts:
            entry.blocked_until = now + self.block_seconds
            return RateLimitResult(
                allowed=False, remaining=0, retry_after=float(self.block_seconds),
                message=f'Too many attempts. Please try again in {format_duration(self.block_seconds)}.',
            )

        entry.attempts.append(now)
        remaining = self.max_attempts - len(entry.attempts)
        return RateLimitResult(
            allowed=True, remaining=remaining, retry_after=None,
            message=f'{remaining} attempt remaining' if remaining <= 1 else '',
        )

    def status(self, key: str) -> RateLimitResult:
        """Same answer as check() but without recording an attempt."""
        now   = self._clock()
        entry = self._entries.get(key)
        if entry is None:
            return RateLimitResult(allowed=True, remaining=self.max_attempts, retry_after=None)

        if entry.blocked_until is not None and now < entry.blocked_until:
            return RateLimitResult(allowed=False, remaining=0, retry_after=entry.blocked_until - now)

        recent = [t for t in entry.attempts if now - t < self.window_seconds]
        return RateLimitResult(
            allowed=len(recent) < self.max_attempts,
            remaining=max(self.max_attempts - len(recent), 0),
            retry_after=None,
        )

    def reset(self, key: str) -> None:
        """Forget a single key (e.g. after a successful login)."""
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Forget every key."""
        self._entries.clear()
