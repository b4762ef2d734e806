from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator
from uuid import uuid4

from invoicerun.core.config import get_settings
from invoicerun.core.errors import AccountBusyError
from invoicerun.services.resilience import get_resilience_redis
from invoicerun.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_local_locks: dict[str, asyncio.Lock] = {}
_local_owners: dict[str, str] = {}
_local_loop: asyncio.AbstractEventLoop | None = None


@dataclass(slots=True)
class AccountLease:
    account_id: str
    key: str
    token: str
    redis: Any | None
    local: bool
    ttl_s: int = 0


def _lease_key(account_id: str) -> str:
    return f"{get_settings().lock_redis_prefix}:account:{account_id}"


def _local_lock_for(key: str) -> asyncio.Lock:
    # asyncio locks bind to the loop that first waits on them; start over when the loop changes.
    global _local_loop
    loop = asyncio.get_running_loop()
    if _local_loop is not loop:
        _local_locks.clear()
        _local_owners.clear()
        _local_loop = loop
    lock = _local_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _local_locks[key] = lock
    return lock


async def _lease_redis():
    if get_settings().invoice_execution_mode.lower() == "inline":
        return None
    return await get_resilience_redis()


async def acquire_account_lease(account_id: str, *, wait_s: float | None = None) -> AccountLease:
    """Take the per-account single-flight lease, waiting up to ``wait_s`` seconds.

    Redis ``SET NX EX`` coordinates worker processes; inline mode (and deployments without
    Redis) fall back to an in-process lock per account. Raises ``AccountBusyError`` when the
    lease is still held after the wait budget.
    """
    settings = get_settings()
    wait_s = settings.account_lock_wait_s if wait_s is None else wait_s
    key = _lease_key(account_id)
    token = uuid4().hex
    redis = await _lease_redis()
    if redis is not None:
        ttl_s = max(5, int(settings.account_lock_ttl_s))
        poll_s = max(1, int(settings.account_lock_poll_interval_ms)) / 1000.0
        deadline = time.monotonic() + max(0.0, wait_s)
        while True:
            acquired = await redis.set(key, token, nx=True, ex=ttl_s)
            if acquired:
                return AccountLease(
                    account_id=account_id, key=key, token=token, redis=redis, local=False, ttl_s=ttl_s
                )
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(poll_s)
    else:
        lock = _local_lock_for(key)
        acquired = False
        if not lock.locked():
            acquired = await lock.acquire()
        elif wait_s > 0:
            try:
                acquired = await asyncio.wait_for(lock.acquire(), timeout=wait_s)
            except asyncio.TimeoutError:
                acquired = False
        if acquired:
            _local_owners[key] = token
            return AccountLease(account_id=account_id, key=key, token=token, redis=None, local=True)

    increment_counter("account_lease_busy_total")
    logger.warning("account_lease_busy account_id=%s wait_s=%s", account_id, wait_s)
    raise AccountBusyError(f"account {account_id} has an invoice run in progress")


async def _holds(lease: AccountLease) -> bool:
    current = await lease.redis.get(lease.key)
    value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
    return value == lease.token


async def release_account_lease(lease: AccountLease) -> None:
    # Release only if this holder still owns the token to avoid clobbering a newer holder.
    if lease.local:
        lock = _local_locks.get(lease.key)
        if lock is not None and lock.locked() and _local_owners.get(lease.key) == lease.token:
            _local_owners.pop(lease.key, None)
            lock.release()
        return
    if lease.redis is None:
        return
    if await _holds(lease):
        await lease.redis.delete(lease.key)


async def renew_account_lease(lease: AccountLease) -> bool:
    """Re-arm a Redis lease to its full TTL; False once another holder owns the key."""
    if lease.local or lease.redis is None:
        return True
    if not await _holds(lease):
        return False
    await lease.redis.expire(lease.key, lease.ttl_s)
    return True


async def _keep_alive(lease: AccountLease, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            renewed = await renew_account_lease(lease)
        except Exception as exc:  # noqa: BLE001 - keep renewing; the TTL still bounds a dead holder
            logger.warning("account_lease_renew_failed account_id=%s error=%s", lease.account_id, exc)
            continue
        if not renewed:
            increment_counter("account_lease_lost_total")
            logger.error("account_lease_lost account_id=%s", lease.account_id)
            return


@asynccontextmanager
async def account_lease(account_id: str, *, wait_s: float | None = None) -> AsyncIterator[AccountLease]:
    lease = await acquire_account_lease(account_id, wait_s=wait_s)
    heartbeat: asyncio.Task | None = None
    if not lease.local:
        # A run spans several plugin calls, each bounded only by its own timeout.
        interval_s = min(get_settings().account_lock_renew_interval_s, lease.ttl_s / 2)
        heartbeat = asyncio.create_task(_keep_alive(lease, max(interval_s, 0.001)))
    try:
        yield lease
    finally:
        if heartbeat is not None:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
        await release_account_lease(lease)
