from __future__ import annotations

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from redis.asyncio import Redis

from invoicerun.core.config import get_settings
from invoicerun.core.errors import IntegrationUnavailableError
from invoicerun.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Shared Redis connection for account leases and breaker state; one client per event loop.
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop is current_loop:
        return _redis_pool
    async with _redis_lock:
        if _redis_pool is None or _redis_loop is not current_loop:
            try:
                _redis_pool = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable error=%s", exc)
                _redis_pool = None
                return None
            _redis_loop = current_loop
    return _redis_pool


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        settings = get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def delay_s(self, attempt: int) -> float:
        # Exponential with +/-50% jitter so workers sharing an endpoint spread out.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    """Call ``func`` under a per-attempt timeout, retrying only transient failures."""
    policy = policy or RetryPolicy.from_settings()
    retryable = retryable or is_transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - non-transient failures propagate below
            if attempt == attempts or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            await asyncio.sleep(policy.delay_s(attempt))
    raise AssertionError("unreachable")


class BreakerPhase(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_PHASE_GAUGE = {BreakerPhase.CLOSED: 0.0, BreakerPhase.HALF_OPEN: 0.5, BreakerPhase.OPEN: 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass(frozen=True)
class BreakerSnapshot:
    phase: BreakerPhase = BreakerPhase.CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_redis(self) -> dict[str, str]:
        return {
            "phase": self.phase.value,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_redis(cls, raw: dict[str, str]) -> BreakerSnapshot:
        return cls(
            phase=BreakerPhase(raw.get("phase", BreakerPhase.CLOSED.value)),
            failures=int(raw.get("failures") or 0),
            opened_at=float(raw["opened_at"]) if raw.get("opened_at") else None,
            trials=int(raw.get("trials") or 0),
        )


class CircuitBreaker:
    """Closed/open/half-open breaker guarding one outbound integration.

    With a Redis client every worker shares the same snapshot under
    ``{cb_redis_prefix}:{integration}``; without one the snapshot is kept on the instance.
    """

    def __init__(
        self,
        integration: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self.integration = integration
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._time = time_source or time.monotonic
        self._snapshot = BreakerSnapshot()
        self._key = f"{settings.cb_redis_prefix}:{integration}"

    async def _read(self) -> BreakerSnapshot:
        if self._redis is not None:
            raw = await self._redis.hgetall(self._key)
            if raw:
                return BreakerSnapshot.from_redis(raw)
        return self._snapshot

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        self._snapshot = snapshot
        if self._redis is None:
            return
        await self._redis.hset(self._key, mapping=snapshot.to_redis())
        await self._redis.expire(self._key, max(self._config.open_seconds * 4, 60))

    def _enter(self, current: BreakerSnapshot, phase: BreakerPhase) -> BreakerSnapshot:
        if current.phase is not phase:
            logger.warning(
                "circuit_breaker_transition integration=%s from=%s to=%s",
                self.integration,
                current.phase.value,
                phase.value,
            )
            increment_counter(f"circuit_breaker_transition_total.{self.integration}.{phase.value}")
            set_gauge(f"circuit_breaker_state.{self.integration}", _PHASE_GAUGE[phase])
        return BreakerSnapshot(phase=phase, opened_at=self._time() if phase is BreakerPhase.OPEN else None)

    async def before_call(self) -> None:
        """Reserve a call slot or raise ``IntegrationUnavailableError`` while the breaker is open."""
        snapshot = await self._read()
        if snapshot.phase is BreakerPhase.OPEN:
            elapsed = self._time() - (snapshot.opened_at or 0.0)
            if elapsed < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self.integration} is temporarily unavailable")
            snapshot = self._enter(snapshot, BreakerPhase.HALF_OPEN)
        if snapshot.phase is BreakerPhase.HALF_OPEN:
            if snapshot.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self.integration} is temporarily unavailable")
            snapshot = replace(snapshot, trials=snapshot.trials + 1)
        await self._write(snapshot)

    async def record_success(self) -> None:
        snapshot = await self._read()
        await self._write(self._enter(snapshot, BreakerPhase.CLOSED))

    async def record_failure(self) -> None:
        snapshot = await self._read()
        failures = snapshot.failures + 1
        if snapshot.phase is BreakerPhase.HALF_OPEN or failures >= self._config.failure_threshold:
            await self._write(self._enter(snapshot, BreakerPhase.OPEN))
        else:
            await self._write(replace(snapshot, failures=failures))


class Bulkhead:
    """Caps how many account runs one poller cycle dispatches at once."""

    def __init__(self, name: str, limit: int) -> None:
        self.name = name
        self.limit = max(1, limit)
        self._sem = asyncio.Semaphore(self.limit)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        # Callers queue for a slot instead of being rejected.
        async with self._sem:
            yield
