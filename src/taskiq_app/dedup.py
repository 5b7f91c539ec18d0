"""Dedup locks for enqueueing jobs and for the shared crawl lock.

Locks are Redis keys set with ``SET NX EX``; under ``TASKIQ_TESTING`` they
live in process memory instead. Crawls and rescoring hold one execution
lock (:func:`crawl_lock_key`) so only one of them writes listings at a time.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from time import monotonic

from redis.asyncio import Redis

from src.config import get_settings

CRAWL_LOCK_NAME = "crawl_bargains"

_MEMORY_LOCKS: dict[str, float] = {}


def build_dedup_key(*, scope: str, task_name: str, fingerprint: str) -> str:
    """Build namespaced dedup key."""

    return f"dedup:{scope}:{task_name}:{fingerprint}"


def crawl_lock_key() -> str:
    return build_dedup_key(
        scope="execution", task_name=CRAWL_LOCK_NAME, fingerprint="default"
    )


def _acquire_memory_lock(key: str, ttl_seconds: int) -> bool:
    now = monotonic()
    expired = [lock_key for lock_key, expiry in _MEMORY_LOCKS.items() if expiry <= now]
    for lock_key in expired:
        _MEMORY_LOCKS.pop(lock_key, None)

    if key in _MEMORY_LOCKS:
        return False

    _MEMORY_LOCKS[key] = now + ttl_seconds
    return True


async def acquire_dedup_lock(key: str, ttl_seconds: int) -> bool:
    """Take ``key`` unless another worker holds it; expires after ``ttl_seconds``."""

    settings = get_settings()

    if settings.taskiq_testing:
        return _acquire_memory_lock(key, ttl_seconds)

    client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    try:
        locked = await client.set(key, "1", nx=True, ex=ttl_seconds)
        return bool(locked)
    finally:
        await client.aclose()


async def release_dedup_lock(key: str) -> None:
    settings = get_settings()

    if settings.taskiq_testing:
        _MEMORY_LOCKS.pop(key, None)
        return

    client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    try:
        await client.delete(key)
    finally:
        await client.aclose()


@asynccontextmanager
async def execution_lock(key: str, ttl_seconds: int) -> AsyncIterator[bool]:
    """Hold ``key`` for the block; yields False (and holds nothing) if taken."""

    acquired = await acquire_dedup_lock(key, ttl_seconds)
    try:
        yield acquired
    finally:
        if acquired:
            await release_dedup_lock(key)
