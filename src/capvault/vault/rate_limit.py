"""Brute-force protection for vault unlock attempts.

After ``max_attempts`` consecutive failures the vault is locked out for
``lockout_ms``; each further lockout before a successful unlock doubles the
window, up to ``max_lockout_ms``. A failure streak older than the base
lockout window is forgotten.

The state is shared between contexts through the store. A successful unlock
stamps ``reset_at``; loading a state with a newer stamp discards local
counters from before that reset, and otherwise merges toward the stricter
side.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from ..core import defaults
from ..errors import RateLimitedError

# Key of the best-effort mirror in the shared store
RATE_LIMIT_STATE_KEY = "walletRateLimitState"


@dataclass
class RateLimitStatus:
    """Rate limit state for display in the unlock UI."""

    limited: bool
    remaining_ms: int = 0
    remaining_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limited": self.limited,
            "remainingMs": self.remaining_ms,
            "remainingAttempts": self.remaining_attempts,
        }


class UnlockRateLimiter:
    """Failed-unlock counter with stepped lockouts."""

    def __init__(
        self,
        max_attempts: int = defaults.MAX_UNLOCK_ATTEMPTS,
        lockout_ms: int = defaults.LOCKOUT_MS,
        max_lockout_ms: int = defaults.MAX_LOCKOUT_MS,
    ) -> None:
        self.max_attempts = max_attempts
        self.lockout_ms = lockout_ms
        self.max_lockout_ms = max(max_lockout_ms, lockout_ms)
        self.attempts = 0
        self.last_attempt = 0
        self.locked_until = 0
        self.consecutive_lockouts = 0
        self.reset_at = 0

    def _expire(self, now: int) -> None:
        if self.locked_until:
            if now >= self.locked_until:
                self.locked_until = 0
                self.attempts = 0
            return
        if self.attempts and now - self.last_attempt > self.lockout_ms:
            self.attempts = 0

    def status(self, now: int) -> RateLimitStatus:
        self._expire(now)
        if self.locked_until > now:
            return RateLimitStatus(
                limited=True,
                remaining_ms=self.locked_until - now,
                remaining_attempts=0,
            )
        return RateLimitStatus(
            limited=False,
            remaining_attempts=self.max_attempts - self.attempts,
        )

    def check(self, now: int) -> None:
        """Raise RateLimitedError while a lockout is active."""
        status = self.status(now)
        if status.limited:
            raise RateLimitedError(status.remaining_ms, status.remaining_attempts)

    def lockout_duration(self) -> int:
        """Length of the next lockout window."""
        exponent = max(self.consecutive_lockouts, 0)
        return min(self.lockout_ms * (2 ** exponent), self.max_lockout_ms)

    def record_failure(self, now: int) -> RateLimitStatus:
        self._expire(now)
        self.attempts += 1
        self.last_attempt = now
        if self.attempts >= self.max_attempts:
            self.locked_until = now + self.lockout_duration()
            self.consecutive_lockouts += 1
        return self.status(now)

    def reset(self, now: int = 0) -> None:
        self.attempts = 0
        self.last_attempt = 0
        self.locked_until = 0
        self.consecutive_lockouts = 0
        self.reset_at = max(self.reset_at, now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "lastAttempt": self.last_attempt,
            "lockedUntil": self.locked_until,
            "consecutiveLockouts": self.consecutive_lockouts,
            "resetAt": self.reset_at,
        }

    def load(self, data: Dict[str, Any]) -> None:
        """Adopt persisted state, never loosening a stricter local state.

        A newer ``resetAt`` in ``data`` means another context unlocked
        successfully, so local failures from before it are dropped first.
        """
        stored_reset = int(data.get("resetAt", 0))
        if stored_reset > self.reset_at:
            self.attempts = 0
            self.last_attempt = 0
            self.locked_until = 0
            self.consecutive_lockouts = 0
            self.reset_at = stored_reset
        if self.reset_at and int(data.get("lastAttempt", 0)) < self.reset_at:
            # Failures recorded before the latest successful unlock.
            return
        self.attempts = max(self.attempts, int(data.get("attempts", 0)))
        self.last_attempt = max(self.last_attempt, int(data.get("lastAttempt", 0)))
        self.locked_until = max(self.locked_until, int(data.get("lockedUntil", 0)))
        self.consecutive_lockouts = max(
            self.consecutive_lockouts, int(data.get("consecutiveLockouts", 0))
        )
