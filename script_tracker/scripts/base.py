"""Base class and runtime context for one-off scripts."""

import time
from collections.abc import Awaitable, Callable
from typing import Any, NoReturn

from sqlalchemy.ext.asyncio import AsyncSession

from script_tracker.core.errors import ScriptSkipped, ScriptTimeoutError
from script_tracker.core.logging import get_logger
from script_tracker.models import ExecutedScript
from script_tracker.services.batches import (
    DEFAULT_BATCH_SIZE,
    as_batch_source,
    format_progress,
    process_in_batches,
)


def check_timeout(started_at: float, max_duration: float | None) -> None:
    """
    Fail fast once a time budget is spent.

    The cooperative alternative to the harness's forced timeout: call it
    from long loops so the script stops at a point of its choosing.

    Args:
        started_at: time.monotonic() value taken when the work began
        max_duration: Budget in seconds; None or 0 disables the check

    Raises:
        ScriptTimeoutError: if the budget is exceeded
    """
    if not max_duration or max_duration <= 0:
        return
    elapsed = time.monotonic() - started_at
    if elapsed > max_duration:
        raise ScriptTimeoutError(
            f"Script execution exceeded {max_duration} seconds (elapsed: {elapsed:.2f}s)"
        )


class _DefaultTimeout:
    """Marker for a script that inherits the runner's default timeout."""

    def __repr__(self) -> str:
        return "USE_DEFAULT_TIMEOUT"


USE_DEFAULT_TIMEOUT: Any = _DefaultTimeout()


class ScriptContext:
    """What a running script sees: its record, the run's transaction and helpers.

    `session` belongs to the harness's transaction. Flush through it freely,
    but never commit or roll it back from the script.
    """

    def __init__(
        self,
        identifier: str,
        record: ExecutedScript,
        session: AsyncSession,
        timeout_seconds: float | None,
        started_at: float | None = None,
    ) -> None:
        self.identifier = identifier
        self.record = record
        self.session = session
        self.timeout_seconds = timeout_seconds
        self.started_at = started_at if started_at is not None else time.monotonic()
        self.logger = get_logger(__name__).bind(script=identifier)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def log(self, message: str, level: str = "info") -> None:
        self.logger.log(level.upper(), message)

    def log_progress(self, current: int, total: int, message: str | None = None) -> None:
        self.log(format_progress(current, total, message))

    def skip(self, reason: str | None = None) -> NoReturn:
        """Stop the script early; the run is recorded as skipped, not failed."""
        self.log(f"Skipping: {reason}" if reason else "Skipping script")
        raise ScriptSkipped(reason)

    def check_timeout(self, max_duration: float | None = None) -> None:
        """Raise ScriptTimeoutError if this run has used up its time budget."""
        budget = self.timeout_seconds if max_duration is None else max_duration
        check_timeout(self.started_at, budget)

    async def process_in_batches(
        self,
        source: Any,
        fn: Callable[[Any], Any | Awaitable[Any]],
        batch_size: int = DEFAULT_BATCH_SIZE,
        keyset: bool = False,
    ) -> int:
        """Walk a select statement or sequence in chunks, checking the timeout per element.

        Selects are visited in their own ORDER BY. Pass `keyset=True` to page
        by primary key when the operation changes the rows the select filters on.
        """
        return await process_in_batches(
            as_batch_source(source, self.session, keyset=keyset),
            fn,
            batch_size=batch_size,
            on_item=self.check_timeout,
            log=self.log,
        )


class OneOffScript:
    """
    Base class for tracked maintenance scripts.

    Subclasses implement `execute`. Left unset, `timeout` follows the
    runner's default (`default_timeout_seconds`, 300 unless configured).
    Override it to give one script its own budget in seconds; None or 0
    disables the forced timeout:

        class BackfillSlugs(OneOffScript):
            timeout = 3600

            async def execute(self, ctx: ScriptContext) -> None:
                stmt = select(Article).where(Article.slug.is_(None))
                await ctx.process_in_batches(stmt, self.fill_slug)
    """

    timeout: Any = USE_DEFAULT_TIMEOUT
    description: str = ""

    async def execute(self, ctx: ScriptContext) -> None:
        raise NotImplementedError("Subclasses must implement the execute method")

    async def __call__(self, ctx: ScriptContext) -> None:
        await self.execute(ctx)
