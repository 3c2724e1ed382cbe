"""Brute-force lockout transitions.

Two states: Active and Locked(until). The stored ``locked_until`` is read
lazily at check time; nothing runs in the background to expire it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from tenantauth.storage.models import Account


@dataclass(frozen=True)
class LockoutDecision:
    attempts: int
    locked_until: Optional[datetime]

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


class LockoutPolicy:
    def __init__(self, max_attempts: int, lockout_duration: timedelta) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration

    def is_locked(self, account: Account, now: datetime) -> bool:
        return account.locked_until is not None and account.locked_until > now

    def register_failure(self, attempts: int, now: datetime) -> LockoutDecision:
        """Decide the state after a failed password check.

        ``attempts`` is the count including this failure. The account locks on
        the attempt that reaches the threshold.
        """
        if attempts >= self.max_attempts:
            return LockoutDecision(attempts, now + self.lockout_duration)
        return LockoutDecision(attempts, None)

    def register_success(self, now: datetime) -> LockoutDecision:
        return LockoutDecision(0, None)
