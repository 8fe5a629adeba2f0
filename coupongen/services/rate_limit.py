from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Sequence

from coupongen.core.config import Settings, get_settings
from coupongen.core.errors import RateLimitedError, format_retry_after


logger = logging.getLogger(__name__)

LEDGER_LOGIN = "login"
LEDGER_SUBMIT_IP = "submit_ip"
LEDGER_SUBMIT_EMAIL = "submit_email"


@dataclass(frozen=True)
class LedgerPolicy:
    # Sliding window with lockout, parametrized per use case.
    name: str
    window_s: float
    max_count: int
    lock_s: float
    # Reject as soon as the count reaches max, even before a lock is set.
    reject_at_max: bool = False


@dataclass
class LedgerEntry:
    count: int
    window_start: float
    # 0.0 means unlocked; a non-zero value implies count >= max_count.
    locked_until: float = 0.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int = 0


def _ms(seconds: float) -> int:
    return max(0, int(math.ceil(seconds * 1000.0)))


class RateLimitLedger:
    """In-process key -> entry map for one rate limit policy.

    All operations are synchronous. Callers must not await between ``check``
    and ``record`` for the same request; the event loop gives the pair
    atomicity only because nothing suspends in between.
    """

    def __init__(self, policy: LedgerPolicy, *, time_provider: Callable[[], float] | None = None) -> None:
        self.policy = policy
        self._time = time_provider or time.time
        self._entries: dict[str, LedgerEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def snapshot(self, key: str) -> LedgerEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return LedgerEntry(entry.count, entry.window_start, entry.locked_until)

    def check(self, key: str) -> RateLimitDecision:
        now = self._time()
        entry = self._entries.get(key)
        if entry is None:
            return RateLimitDecision(allowed=True)
        if entry.locked_until and now < entry.locked_until:
            return RateLimitDecision(allowed=False, retry_after_ms=_ms(entry.locked_until - now))
        if now - entry.window_start > self.policy.window_s:
            entry.count = 0
            entry.window_start = now
            entry.locked_until = 0.0
        if self.policy.reject_at_max and entry.count >= self.policy.max_count:
            window_end = entry.window_start + self.policy.window_s
            return RateLimitDecision(allowed=False, retry_after_ms=max(1, _ms(window_end - now)))
        return RateLimitDecision(allowed=True)

    def record(self, key: str) -> LedgerEntry:
        now = self._time()
        entry = self._entries.get(key)
        if entry is None:
            entry = LedgerEntry(count=0, window_start=now)
            self._entries[key] = entry
        entry.count += 1
        if entry.count >= self.policy.max_count:
            if self.policy.reject_at_max:
                # Daily quotas stay locked until the window that filled them ends.
                entry.locked_until = max(entry.locked_until, entry.window_start + self.policy.lock_s)
            else:
                entry.locked_until = now + self.policy.lock_s
        return entry

    def reset(self, key: str) -> None:
        self._entries.pop(key, None)

    def sweep(self) -> int:
        # Drop idle unlocked entries and long-expired locks; safe to call repeatedly.
        now = self._time()
        expired: list[str] = []
        for key, entry in self._entries.items():
            if not entry.locked_until:
                if now - entry.window_start > self.policy.window_s * 2:
                    expired.append(key)
            elif now > entry.locked_until + self.policy.lock_s:
                expired.append(key)
        for key in expired:
            del self._entries[key]
        return len(expired)


def normalize_email_key(email: str | None, tenant_id: int | None) -> str:
    # Scope email quotas per tenant so one tenant's traffic never consumes another's.
    base = str(email or "").strip().lower()
    if isinstance(tenant_id, int) and not isinstance(tenant_id, bool):
        return f"{tenant_id}:{base}"
    return base


class AdmissionLimiter:
    """Process-wide bundle of the login and submission ledgers.

    ``enabled`` is the only place that consults the bypass switch
    (``RATE_LIMIT_ENABLED``). The periodic sweep is an asyncio task owned by
    this object and driven by ``start``/``stop`` from the app lifespan.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], float] | None = None,
        sweep_hooks: Sequence[Callable[[], int]] = (),
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        self.login = RateLimitLedger(
            LedgerPolicy(LEDGER_LOGIN, s.login_window_s, s.login_max_attempts, s.login_lock_s),
            time_provider=time_provider,
        )
        self.submit_ip = RateLimitLedger(
            LedgerPolicy(LEDGER_SUBMIT_IP, s.submit_window_s, s.submit_max_per_ip, s.submit_lock_s),
            time_provider=time_provider,
        )
        self.submit_email = RateLimitLedger(
            LedgerPolicy(
                LEDGER_SUBMIT_EMAIL,
                s.email_daily_window_s,
                s.email_max_per_day,
                s.email_lock_s,
                reject_at_max=True,
            ),
            time_provider=time_provider,
        )
        self._sweep_interval_s = max(1, int(s.rate_limit_sweep_interval_s))
        self._sweep_task: asyncio.Task[None] | None = None
        # Extra in-memory stores (expired sessions) cleaned on the same schedule.
        self._sweep_hooks = tuple(sweep_hooks)

    @property
    def enabled(self) -> bool:
        return self._settings.rate_limit_enabled

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def ledgers(self) -> tuple[RateLimitLedger, ...]:
        return (self.login, self.submit_ip, self.submit_email)

    def check_login(self, ip: str) -> None:
        if not self.enabled:
            return
        decision = self.login.check(ip)
        if not decision.allowed:
            raise RateLimitedError(decision.retry_after_ms)

    def record_login_failure(self, ip: str) -> None:
        if not self.enabled:
            return
        entry = self.login.record(ip)
        if entry.locked_until:
            logger.warning("login_lockout ip=%s", ip)

    def record_login_success(self, ip: str) -> None:
        # A successful login starts the IP over with a clean entry.
        self.login.reset(ip)

    def admit_submission(self, *, ip: str, email: str | None, tenant_id: int | None) -> None:
        # Check both keys, then record both optimistically with no suspension in between.
        if not self.enabled:
            return
        ip_decision = self.submit_ip.check(ip)
        if not ip_decision.allowed:
            raise RateLimitedError(
                ip_decision.retry_after_ms,
                "Too many submissions from this address. "
                f"Try again in {format_retry_after(ip_decision.retry_after_ms)}.",
            )
        email_key = normalize_email_key(email, tenant_id)
        email_decision = self.submit_email.check(email_key)
        if not email_decision.allowed:
            raise RateLimitedError(
                email_decision.retry_after_ms,
                "The maximum number of requests for this email has been reached. "
                f"Try again in {format_retry_after(email_decision.retry_after_ms)}.",
            )
        self.submit_ip.record(ip)
        self.submit_email.record(email_key)

    def sweep(self) -> int:
        cleaned = sum(ledger.sweep() for ledger in self.ledgers())
        cleaned += sum(hook() for hook in self._sweep_hooks)
        if cleaned:
            logger.debug("rate_limit_sweep cleaned=%s", cleaned)
        return cleaned

    def sizes(self) -> dict[str, int]:
        return {ledger.policy.name: len(ledger) for ledger in self.ledgers()}

    async def start(self) -> None:
        # Idempotent: a second start while the task is alive is a no-op.
        if self.running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="rate-limit-sweep")
        logger.info("rate_limit_sweep_started interval_s=%s", self._sweep_interval_s)

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("rate_limit_sweep_stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            try:
                self.sweep()
            except Exception:  # noqa: BLE001 - keep the sweeper alive across unexpected failures
                logger.exception("rate_limit_sweep_failed")
