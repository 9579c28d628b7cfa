"""RateLimiter: evaluation cooldown, daily case cap, day rollover."""

from __future__ import annotations

from datetime import timedelta

from conftest import ManualClock
from safety.limits import RateLimiter


def test_cooldown_blocks_second_evaluation(clock: ManualClock):
    limiter = RateLimiter(cooldown_minutes=30, clock=clock)

    assert limiter.can_evaluate("alice") is True
    clock.advance(minutes=29)
    assert limiter.can_evaluate("alice") is False


def test_cooldown_expires(clock: ManualClock):
    limiter = RateLimiter(cooldown_minutes=30, clock=clock)
    limiter.can_evaluate("alice")

    clock.advance(minutes=30)
    assert limiter.can_evaluate("alice") is True


def test_cooldown_is_per_identity(clock: ManualClock):
    limiter = RateLimiter(cooldown_minutes=30, clock=clock)

    assert limiter.can_evaluate("alice") is True
    assert limiter.can_evaluate("bob") is True
    assert limiter.cooldown_remaining("alice") == timedelta(minutes=30)


def test_daily_cap(clock: ManualClock):
    limiter = RateLimiter(max_cases_per_day=2, clock=clock)

    assert limiter.can_file("alice")
    limiter.record_case("alice")
    limiter.record_case("alice")
    assert limiter.can_file("alice") is False
    assert limiter.can_file("bob") is True


def test_day_rollover_resets_case_count(clock: ManualClock):
    limiter = RateLimiter(max_cases_per_day=1, clock=clock)
    limiter.record_case("alice")
    assert limiter.can_file("alice") is False

    clock.advance(days=1)
    assert limiter.cases_today("alice") == 0
    assert limiter.can_file("alice") is True


def test_gates_do_not_touch_case_counter(clock: ManualClock):
    limiter = RateLimiter(max_cases_per_day=3, clock=clock)
    for _ in range(5):
        limiter.can_file("alice")

    assert limiter.cases_today("alice") == 0


def test_configure_applies_new_limits(clock: ManualClock):
    limiter = RateLimiter(cooldown_minutes=30, max_cases_per_day=3, clock=clock)
    limiter.can_evaluate("alice")

    limiter.configure(cooldown_minutes=0, max_cases_per_day=0)
    assert limiter.can_evaluate("alice") is True
    assert limiter.can_file("alice") is False


def test_snapshot_reports_state(clock: ManualClock):
    limiter = RateLimiter(clock=clock)
    limiter.can_evaluate("alice")
    limiter.record_case("alice")

    snapshot = limiter.snapshot()
    assert snapshot["alice"]["cases_today"] == 1
    assert snapshot["alice"]["last_evaluation_at"] == clock.now.isoformat()
