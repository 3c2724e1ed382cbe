"""Unit tests for the brute-force lockout policy."""

from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.service.lockout import LockoutPolicy
from tenantauth.storage.models import Account

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _account(**kwargs) -> Account:
    return Account(id=1, email="a@example.com", username="a", password_hash="x", **kwargs)


class TestRegisterFailure:
    def test_failures_below_threshold_do_not_lock(self):
        """Attempts under the maximum leave the account unlocked."""
        policy = LockoutPolicy(5, timedelta(minutes=15))
        for attempts in range(1, 5):
            decision = policy.register_failure(attempts, NOW)
            assert not decision.locked
            assert decision.attempts == attempts

    def test_threshold_attempt_locks_for_duration(self):
        """The attempt that reaches the maximum sets locked_until = now + duration."""
        policy = LockoutPolicy(5, timedelta(minutes=15))
        decision = policy.register_failure(5, NOW)
        assert decision.locked
        assert decision.locked_until == NOW + timedelta(minutes=15)

    def test_attempts_past_threshold_stay_locked(self):
        policy = LockoutPolicy(3, timedelta(minutes=1))
        assert policy.register_failure(7, NOW).locked

    def test_rejects_non_positive_maximum(self):
        with pytest.raises(ValueError):
            LockoutPolicy(0, timedelta(minutes=15))


class TestIsLocked:
    def test_unlocked_account(self):
        policy = LockoutPolicy(5, timedelta(minutes=15))
        assert not policy.is_locked(_account(), NOW)

    def test_future_lock_is_active(self):
        policy = LockoutPolicy(5, timedelta(minutes=15))
        account = _account(locked_until=NOW + timedelta(seconds=1))
        assert policy.is_locked(account, NOW)

    def test_expired_lock_is_inactive(self):
        """A lock in the past is treated as Active without any cleanup job."""
        policy = LockoutPolicy(5, timedelta(minutes=15))
        account = _account(locked_until=NOW - timedelta(seconds=1), login_attempts=5)
        assert not policy.is_locked(account, NOW)

    def test_lock_ending_exactly_now_is_inactive(self):
        policy = LockoutPolicy(5, timedelta(minutes=15))
        assert not policy.is_locked(_account(locked_until=NOW), NOW)


def test_success_resets_state():
    decision = LockoutPolicy(5, timedelta(minutes=15)).register_success(NOW)
    assert decision.attempts == 0
    assert not decision.locked
