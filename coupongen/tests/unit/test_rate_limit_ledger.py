from __future__ import annotations

import asyncio

import pytest

from coupongen.core.config import Settings
from coupongen.core.errors import RateLimitedError, format_retry_after
from coupongen.services.rate_limit import (
    AdmissionLimiter,
    LedgerPolicy,
    RateLimitLedger,
    normalize_email_key,
)


class FakeClock:
    # Deterministic time source injected into ledgers.
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _limiter(clock: FakeClock, **overrides) -> AdmissionLimiter:
    return AdmissionLimiter(settings=Settings(**overrides), time_provider=clock)


def test_login_lockout_after_max_failures() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(10):
        limiter.check_login("10.0.0.1")
        limiter.record_login_failure("10.0.0.1")
        clock.advance(1)

    with pytest.raises(RateLimitedError) as excinfo:
        limiter.check_login("10.0.0.1")
    # Locked at the tenth failure (t+9s), one second has passed since.
    assert excinfo.value.retry_after_ms == 1_799_000
    assert excinfo.value.status_code == 429
    assert "30 minutes" in excinfo.value.message

    # Other addresses are unaffected.
    limiter.check_login("10.0.0.2")


def test_login_lockout_expires_and_window_restarts() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(10):
        limiter.record_login_failure("10.0.0.1")

    clock.advance(1800)
    limiter.check_login("10.0.0.1")
    entry = limiter.login.snapshot("10.0.0.1")
    assert entry is not None
    assert entry.count == 0
    assert entry.locked_until == 0.0


def test_attempts_while_locked_do_not_extend_lock() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(10):
        limiter.record_login_failure("10.0.0.1")
    locked_until = limiter.login.snapshot("10.0.0.1").locked_until

    for _ in range(5):
        clock.advance(60)
        with pytest.raises(RateLimitedError):
            limiter.check_login("10.0.0.1")

    assert limiter.login.snapshot("10.0.0.1").locked_until == locked_until
    with pytest.raises(RateLimitedError) as excinfo:
        limiter.check_login("10.0.0.1")
    assert excinfo.value.retry_after_ms == 1_500_000


def test_window_reset_clears_partial_count() -> None:
    clock = FakeClock()
    ledger = RateLimitLedger(LedgerPolicy("login", 600, 10, 1800), time_provider=clock)
    for _ in range(9):
        ledger.record("ip")

    clock.advance(601)
    assert ledger.check("ip").allowed
    entry = ledger.record("ip")
    assert entry.count == 1
    assert entry.locked_until == 0.0


def test_successful_login_clears_entry() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(9):
        limiter.record_login_failure("10.0.0.1")
    limiter.record_login_success("10.0.0.1")

    assert "10.0.0.1" not in limiter.login
    limiter.record_login_failure("10.0.0.1")
    assert limiter.login.snapshot("10.0.0.1").count == 1


def test_check_does_not_create_entries() -> None:
    ledger = RateLimitLedger(LedgerPolicy("login", 600, 10, 1800), time_provider=FakeClock())
    assert ledger.check("ip").allowed
    assert len(ledger) == 0


def test_email_quota_is_per_tenant() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(3):
        limiter.admit_submission(ip="10.0.0.1", email="Shopper@Example.com", tenant_id=1)
        clock.advance(10)

    with pytest.raises(RateLimitedError) as excinfo:
        limiter.admit_submission(ip="10.0.0.1", email="shopper@example.com ", tenant_id=1)
    assert excinfo.value.message == "The maximum number of requests for this email has been reached. Try again in 24 hours."
    assert excinfo.value.retry_after_ms == (86_400 - 30) * 1000

    # Same address, different tenant: independent quota.
    limiter.admit_submission(ip="10.0.0.1", email="shopper@example.com", tenant_id=2)


def test_locked_email_is_rejected_from_any_address() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for index in range(3):
        limiter.admit_submission(ip=f"10.0.0.{index + 1}", email="shopper@example.com", tenant_id=1)

    with pytest.raises(RateLimitedError):
        limiter.admit_submission(ip="10.9.9.9", email="Shopper@example.com", tenant_id=1)
    # The rejected attempt is not charged to the new address.
    assert "10.9.9.9" not in limiter.submit_ip


def test_other_email_from_same_address_is_admitted_after_lock() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(3):
        limiter.admit_submission(ip="10.0.0.1", email="shopper@example.com", tenant_id=1)
    with pytest.raises(RateLimitedError):
        limiter.admit_submission(ip="10.0.0.1", email="shopper@example.com", tenant_id=1)

    limiter.admit_submission(ip="10.0.0.1", email="neighbour@example.com", tenant_id=1)
    assert limiter.submit_email.snapshot("1:neighbour@example.com").count == 1


def test_address_lockout_message_states_remaining_time() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for index in range(20):
        limiter.admit_submission(ip="10.0.0.1", email=f"user{index}@example.com", tenant_id=1)

    with pytest.raises(RateLimitedError) as excinfo:
        limiter.admit_submission(ip="10.0.0.1", email="late@example.com", tenant_id=1)
    assert excinfo.value.message == "Too many submissions from this address. Try again in 30 minutes."
    assert excinfo.value.retry_after_s == 1800


def test_email_quota_reopens_after_window() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(3):
        limiter.admit_submission(ip="10.0.0.1", email="a@example.com", tenant_id=1)
    clock.advance(86_401)
    limiter.admit_submission(ip="10.0.0.1", email="a@example.com", tenant_id=1)
    assert limiter.submit_email.snapshot("1:a@example.com").count == 1


def test_submit_ip_limit_rejects_before_email_is_recorded() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, submit_max_per_ip=2)
    limiter.admit_submission(ip="10.0.0.9", email="one@example.com", tenant_id=1)
    limiter.admit_submission(ip="10.0.0.9", email="two@example.com", tenant_id=1)

    with pytest.raises(RateLimitedError):
        limiter.admit_submission(ip="10.0.0.9", email="three@example.com", tenant_id=1)
    assert "1:three@example.com" not in limiter.submit_email


def test_normalize_email_key() -> None:
    assert normalize_email_key("  Foo@Bar.COM ", 7) == "7:foo@bar.com"
    assert normalize_email_key("foo@bar.com", None) == "foo@bar.com"


def test_sweep_removes_idle_and_expired_entries() -> None:
    clock = FakeClock()
    ledger = RateLimitLedger(LedgerPolicy("login", 600, 2, 1800), time_provider=clock)
    ledger.record("idle")
    ledger.record("locked")
    ledger.record("locked")

    clock.advance(1201)
    assert ledger.sweep() == 1
    assert "idle" not in ledger
    assert "locked" in ledger

    # Locks are kept until one extra lock duration has passed.
    clock.advance(1800 + 1800 - 1201 + 1)
    assert ledger.sweep() == 1
    assert len(ledger) == 0
    assert ledger.sweep() == 0


def test_disabled_limiter_bypasses_every_ledger() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, rate_limit_enabled=False)
    for _ in range(50):
        limiter.check_login("10.0.0.1")
        limiter.record_login_failure("10.0.0.1")
        limiter.admit_submission(ip="10.0.0.1", email="a@example.com", tenant_id=1)

    assert limiter.sizes() == {"login": 0, "submit_ip": 0, "submit_email": 0}


def test_sweep_runs_hooks() -> None:
    calls: list[int] = []

    def _hook() -> int:
        calls.append(1)
        return 2

    limiter = AdmissionLimiter(settings=Settings(), time_provider=FakeClock(), sweep_hooks=(_hook,))
    assert limiter.sweep() == 2
    assert calls == [1]


@pytest.mark.asyncio
async def test_sweeper_start_and_stop_are_idempotent() -> None:
    limiter = AdmissionLimiter(settings=Settings(rate_limit_sweep_interval_s=3600))
    await limiter.start()
    task = limiter._sweep_task
    await limiter.start()
    assert limiter._sweep_task is task
    assert limiter.running

    await limiter.stop()
    await limiter.stop()
    assert not limiter.running
    assert task is not None and task.cancelled()


@pytest.mark.asyncio
async def test_sweeper_loop_sweeps_on_interval(monkeypatch) -> None:
    limiter = AdmissionLimiter(settings=Settings(rate_limit_sweep_interval_s=1))
    swept = asyncio.Event()

    def _sweep() -> int:
        swept.set()
        return 0

    monkeypatch.setattr(limiter, "sweep", _sweep)
    await limiter.start()
    await asyncio.wait_for(swept.wait(), timeout=5)
    await limiter.stop()


def test_format_retry_after() -> None:
    assert format_retry_after(500) == "1 second"
    assert format_retry_after(45_000) == "45 seconds"
    assert format_retry_after(1_800_000) == "30 minutes"
    assert format_retry_after(86_400_000) == "24 hours"
