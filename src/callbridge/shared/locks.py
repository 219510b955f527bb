"""
Per-entity serialization scopes.

Two layers:
- an in-process keyed asyncio lock, so concurrent handlers in one worker
  never interleave mutations on the same call or permission;
- a PostgreSQL transaction-scoped advisory lock for multi-worker setups
  (no-op on other dialects).
"""

import asyncio
import hashlib
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def advisory_lock_id(key: str) -> int:
    """Derive a stable signed bigint lock id from an arbitrary string key."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    # 63-bit positive space avoids signed bigint surprises.
    return int.from_bytes(digest, "big", signed=False) & 0x7FFF_FFFF_FFFF_FFFF


async def acquire_advisory_xact_lock(session: AsyncSession, key: str) -> None:
    """Block until the transaction-scoped advisory lock for ``key`` is held.

    Released automatically on commit/rollback.
    """
    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(:lock_id)"),
        {"lock_id": advisory_lock_id(key)},
    )


class EntityLockRegistry:
    """Keyed asyncio locks with reference counting.

    Entries are dropped once no task holds or waits on them, so the registry
    does not grow with the number of calls ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str]) -> AsyncIterator[None]:
        """Hold several keys at once, acquired in sorted order."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.hold(key))
            yield

    def __len__(self) -> int:
        return len(self._locks)


def call_key(call_id: object) -> str:
    return f"call:{call_id}"


def permission_key(permission_id: object) -> str:
    return f"permission:{permission_id}"


def pair_key(contact_ref: str, destination: str) -> str:
    return f"permission-pair:{contact_ref}:{destination}"
