"""
Batch iteration for script bodies.

Walks a large collection in fixed-size chunks, calling an operation once per
element and logging progress, without loading the whole collection at once.
Used by scripts, not by the harness; an error from the operation propagates
to the caller unchanged.
"""

import inspect
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import Select, func, select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncSession

from script_tracker.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 1000


@runtime_checkable
class BatchSource(Protocol):
    """Anything that can be counted and read back in chunks."""

    async def count(self) -> int: ...

    def batches(self, size: int) -> AsyncIterator[Sequence[Any]]: ...


class SequenceSource:
    """In-memory sequence, chunked by slicing."""

    def __init__(self, items: Sequence[Any]) -> None:
        self._items = items

    async def count(self) -> int:
        return len(self._items)

    async def batches(self, size: int) -> AsyncIterator[Sequence[Any]]:
        for start in range(0, len(self._items), size):
            yield self._items[start : start + size]


class QuerySource:
    """A SQLAlchemy select over one mapped entity.

    By default rows are paged with LIMIT/OFFSET in the statement's own
    ORDER BY, with the primary key appended as a tiebreaker so pages are
    stable. Pass ``keyset=True`` to page by primary key instead
    (``WHERE pk > last ORDER BY pk``): rows updated by the operation then
    cannot shift later pages, but the statement's ORDER BY is replaced.
    """

    def __init__(self, session: AsyncSession, stmt: Select, keyset: bool = False) -> None:
        self._session = session
        self._stmt = stmt
        self._keyset = keyset

    def _primary_key(self) -> tuple[Any, Any]:
        mapper = sa_inspect(self._stmt.column_descriptions[0]["entity"])
        return mapper, mapper.primary_key[0]

    async def count(self) -> int:
        count_stmt = select(func.count()).select_from(self._stmt.order_by(None).subquery())
        result = await self._session.execute(count_stmt)
        return int(result.scalar_one())

    async def batches(self, size: int) -> AsyncIterator[Sequence[Any]]:
        pages = self._keyset_batches(size) if self._keyset else self._offset_batches(size)
        async for batch in pages:
            yield batch

    async def _keyset_batches(self, size: int) -> AsyncIterator[Sequence[Any]]:
        mapper, pk = self._primary_key()

        last_key = None
        while True:
            stmt = self._stmt.order_by(None).order_by(pk).limit(size)
            if last_key is not None:
                stmt = stmt.where(pk > last_key)
            rows = list((await self._session.scalars(stmt)).all())
            if not rows:
                return
            yield rows
            if len(rows) < size:
                return
            last_key = mapper.primary_key_from_instance(rows[-1])[0]

    async def _offset_batches(self, size: int) -> AsyncIterator[Sequence[Any]]:
        _, pk = self._primary_key()
        # order_by() appends, so the statement's own ordering stays first
        ordered = self._stmt.order_by(pk)

        offset = 0
        while True:
            rows = list((await self._session.scalars(ordered.limit(size).offset(offset))).all())
            if not rows:
                return
            yield rows
            if len(rows) < size:
                return
            offset += size


def as_batch_source(
    source: Any,
    session: AsyncSession | None = None,
    keyset: bool = False,
) -> BatchSource:
    """Adapt a select statement, a sequence or an existing BatchSource.

    `keyset` only applies to select statements (see QuerySource).
    """
    if isinstance(source, Select):
        if session is None:
            raise ValueError("A session is required to iterate a select statement")
        return QuerySource(session, source, keyset=keyset)
    if isinstance(source, BatchSource):
        return source
    if isinstance(source, Sequence) and not isinstance(source, (str, bytes)):
        return SequenceSource(source)
    # Other iterables are materialised; prefer a select for large sets
    return SequenceSource(list(source))


def format_progress(current: int, total: int, message: str | None = None) -> str:
    """Format a progress line, e.g. ``Progress: 50/100 (50.0%)``."""
    percentage = round((current / total) * 100, 2) if total else 100.0
    if message:
        return f"{message} ({current}/{total} - {percentage}%)"
    return f"Progress: {current}/{total} ({percentage}%)"


async def process_in_batches(
    source: BatchSource | Sequence[Any],
    fn: Callable[[Any], Any | Awaitable[Any]],
    batch_size: int = DEFAULT_BATCH_SIZE,
    on_item: Callable[[], None] | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """
    Call `fn` once per element of `source`, in source order.

    Progress is logged every max(batch_size, 10% of total) elements, plus a
    final "Completed" line.

    Args:
        source: Collection to walk (see as_batch_source)
        fn: Per-element operation, sync or async
        batch_size: Elements fetched per chunk
        on_item: Called before each element (e.g. a cooperative timeout check)
        log: Message sink, defaults to this module's logger at INFO

    Returns:
        Number of elements `fn` was called for
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    emit = log or logger.info
    source = as_batch_source(source)

    total = await source.count()
    emit(f"There are {total} records to process")
    if total == 0:
        return 0

    emit(f"Processing {total} records in batches of {batch_size}")
    log_interval = max(batch_size, int(total * 0.1))
    processed = 0

    async for batch in source.batches(batch_size):
        for item in batch:
            if on_item is not None:
                on_item()
            result = fn(item)
            if inspect.isawaitable(result):
                await result
            processed += 1
            if processed % log_interval == 0:
                emit(format_progress(processed, total))

    emit(format_progress(processed, total, "Completed"))
    return processed
