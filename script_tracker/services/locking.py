"""
Per-script mutual exclusion.

Three named strategies share the same two-operation contract
(`try_acquire` / `release`) and are selected once, at configuration time:

- ``advisory``: PostgreSQL ``pg_try_advisory_lock`` on a dedicated connection
- ``named_mutex``: MySQL/MariaDB ``GET_LOCK(name, 0)`` on a dedicated connection
- ``uniqueness``: a ``running`` run record is the lock; the race between
  check and insert is closed by the unique index on ``identifier``

Native locks are session scoped, not transaction scoped, so they survive a
rolled-back script and disappear with the connection if the process dies.

Failure policy: errors while acquiring mean "not acquired" (skip rather
than risk a double run); errors while releasing are logged and swallowed.
"""

import enum
import hashlib
from abc import ABC, abstractmethod

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker

from script_tracker.core.logging import get_logger
from script_tracker.models import ExecutedScript, ScriptStatus

logger = get_logger(__name__)

LOCK_NAMESPACE = "script_tracker"


class LockStrategy(str, enum.Enum):
    """Available locking strategies."""

    ADVISORY = "advisory"
    NAMED_MUTEX = "named_mutex"
    UNIQUENESS = "uniqueness"


def advisory_lock_key(identifier: str) -> int:
    """Compute a stable signed 64-bit advisory lock key for an identifier."""
    digest = hashlib.sha1(f"{LOCK_NAMESPACE}:{identifier}".encode()).digest()
    # pg advisory locks take a signed BIGINT; use the full range
    return int.from_bytes(digest[:8], "big", signed=True)


def named_lock_key(identifier: str) -> str:
    """Compute a stable lock name within MySQL's 64 character limit."""
    return f"{LOCK_NAMESPACE}:{hashlib.sha1(identifier.encode()).hexdigest()}"


def strategy_for_dialect(dialect_name: str) -> LockStrategy:
    """Pick the native strategy for a database dialect."""
    if dialect_name == "postgresql":
        return LockStrategy.ADVISORY
    if dialect_name in ("mysql", "mariadb"):
        return LockStrategy.NAMED_MUTEX
    return LockStrategy.UNIQUENESS


class LockManager(ABC):
    """Non-blocking per-identifier lock."""

    strategy: LockStrategy

    def __init__(self) -> None:
        self._held: set[str] = set()

    def is_held(self, identifier: str) -> bool:
        """Whether this manager currently holds the identifier's lock."""
        return identifier in self._held

    async def try_acquire(self, identifier: str) -> bool:
        """Take the lock without blocking. False if held here or elsewhere, or on error."""
        if identifier in self._held:
            logger.bind(identifier=identifier).debug("lock_already_held_locally")
            return False
        try:
            acquired = await self._acquire(identifier)
        except Exception as e:
            logger.bind(identifier=identifier, strategy=self.strategy.value, error=str(e)).error(
                "lock_acquire_failed"
            )
            return False

        if acquired:
            self._held.add(identifier)
            logger.bind(identifier=identifier, strategy=self.strategy.value).debug("lock_acquired")
        else:
            logger.bind(identifier=identifier, strategy=self.strategy.value).info(
                "lock_unavailable"
            )
        return acquired

    async def release(self, identifier: str) -> None:
        """Release the lock. Idempotent; never raises."""
        if identifier not in self._held:
            return
        self._held.discard(identifier)
        try:
            await self._release(identifier)
            logger.bind(identifier=identifier, strategy=self.strategy.value).debug("lock_released")
        except Exception as e:
            logger.bind(identifier=identifier, strategy=self.strategy.value, error=str(e)).error(
                "lock_release_failed"
            )

    async def close(self) -> None:
        """Release every lock still held by this manager."""
        for identifier in list(self._held):
            await self.release(identifier)

    @abstractmethod
    async def _acquire(self, identifier: str) -> bool: ...

    @abstractmethod
    async def _release(self, identifier: str) -> None: ...


class _ConnectionLockManager(LockManager):
    """Native lock held on a dedicated connection for the lock's lifetime."""

    acquire_sql: str
    release_sql: str

    def __init__(self, engine: AsyncEngine) -> None:
        super().__init__()
        self._engine = engine
        self._connections: dict[str, AsyncConnection] = {}

    def _key(self, identifier: str) -> int | str:
        raise NotImplementedError

    async def _acquire(self, identifier: str) -> bool:
        conn = await self._engine.connect()
        try:
            result = await conn.execute(text(self.acquire_sql), {"key": self._key(identifier)})
            acquired = bool(result.scalar())
            # End the implicit transaction; the lock is session scoped
            await conn.commit()
        except Exception:
            await conn.close()
            raise

        if not acquired:
            await conn.close()
            return False
        self._connections[identifier] = conn
        return True

    async def _release(self, identifier: str) -> None:
        conn = self._connections.pop(identifier, None)
        if conn is None:
            return
        try:
            await conn.execute(text(self.release_sql), {"key": self._key(identifier)})
            await conn.commit()
        finally:
            await conn.close()


class AdvisoryLockManager(_ConnectionLockManager):
    """PostgreSQL session-level advisory locks."""

    strategy = LockStrategy.ADVISORY
    acquire_sql = "SELECT pg_try_advisory_lock(:key)"
    release_sql = "SELECT pg_advisory_unlock(:key)"

    def _key(self, identifier: str) -> int:
        return advisory_lock_key(identifier)


class NamedMutexLockManager(_ConnectionLockManager):
    """MySQL / MariaDB named locks with a zero-second wait."""

    strategy = LockStrategy.NAMED_MUTEX
    acquire_sql = "SELECT GET_LOCK(:key, 0)"
    release_sql = "SELECT RELEASE_LOCK(:key)"

    def _key(self, identifier: str) -> str:
        return named_lock_key(identifier)


class UniquenessLockManager(LockManager):
    """Treats an existing `running` record as the lock.

    There is a window between this check and the harness inserting the
    record; a process that loses that race gets DuplicateIdentifier from
    the store.
    """

    strategy = LockStrategy.UNIQUENESS

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        super().__init__()
        self._session_factory = session_factory

    async def _acquire(self, identifier: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ExecutedScript.id)
                .where(
                    ExecutedScript.identifier == identifier,
                    ExecutedScript.status == ScriptStatus.RUNNING,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is None

    async def _release(self, identifier: str) -> None:
        # The terminal status write is what frees the identifier
        return None


def create_lock_manager(
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    strategy: LockStrategy | str = "auto",
) -> LockManager:
    """Build the lock manager for a configured strategy ("auto" picks by dialect)."""
    if strategy == "auto":
        strategy = strategy_for_dialect(engine.dialect.name)
    strategy = LockStrategy(strategy)

    logger.bind(strategy=strategy.value, dialect=engine.dialect.name).debug(
        "lock_strategy_selected"
    )
    if strategy is LockStrategy.ADVISORY:
        return AdvisoryLockManager(engine)
    if strategy is LockStrategy.NAMED_MUTEX:
        return NamedMutexLockManager(engine)
    return UniquenessLockManager(session_factory)
