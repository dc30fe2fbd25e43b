"""
Execution harness for one-off scripts.

One invocation walks:

    Idle -> LockAttempt -> LockFailed
                        -> Running -> Success | Failed | TimedOut | Skipped

- The lock is taken before anything is written and released on every exit.
- The body runs inside one database transaction owned by the harness.
- The timeout guard is asyncio cancellation: the body is interrupted at its
  next await point and its transaction rolled back. Side effects outside
  the transaction are not undone; scripts doing such work should call
  ctx.check_timeout() themselves.
- A skip is not an error, so the transaction commits: anything the body
  wrote before skipping is kept.
"""

import asyncio
import enum
import inspect
import time
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from script_tracker.core.errors import RunStateError, ScriptSkipped, ScriptTimeoutError
from script_tracker.core.logging import get_logger
from script_tracker.models import DEFAULT_TIMEOUT, ExecutedScript
from script_tracker.scripts.base import USE_DEFAULT_TIMEOUT, OneOffScript, ScriptContext
from script_tracker.services.locking import LockManager
from script_tracker.services.run_store import RunRecordStore

logger = get_logger(__name__)

SKIPPED_DEFAULT_MESSAGE = "Script was skipped (no action needed)"
TRACE_FRAMES = 10

ScriptBody = Callable[..., Awaitable[Any] | Any]


class RunOutcome(str, enum.Enum):
    """Mutually exclusive outcomes of one harness invocation."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    LOCK_UNAVAILABLE = "lock_unavailable"


@dataclass
class RunResult:
    """Structured result of `ScriptHarness.run`; never raised, always returned."""

    identifier: str
    outcome: RunOutcome
    output: str
    duration: float | None = None
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.outcome is RunOutcome.SUCCESS

    @property
    def skipped(self) -> bool:
        return self.outcome is RunOutcome.SKIPPED

    @property
    def lock_acquired(self) -> bool:
        return self.outcome is not RunOutcome.LOCK_UNAVAILABLE

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


def format_error(exc: BaseException) -> str:
    """`Type: message` followed by the innermost traceback frames."""
    frames = traceback.extract_tb(exc.__traceback__)[-TRACE_FRAMES:]
    trace = "".join(traceback.format_list(frames)).rstrip()
    message = f"{type(exc).__name__}: {exc}"
    return f"{message}\n{trace}" if trace else message


async def _invoke(body: ScriptBody, ctx: ScriptContext) -> None:
    try:
        takes_context = bool(inspect.signature(body).parameters)
    except (TypeError, ValueError):
        takes_context = True

    result = body(ctx) if takes_context else body()
    if inspect.isawaitable(result):
        await result


class ScriptHarness:
    """Runs script bodies under a lock, a transaction and a timeout, and records the outcome."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: RunRecordStore,
        lock_manager: LockManager,
        default_timeout: float | None = DEFAULT_TIMEOUT,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._locks = lock_manager
        self._default_timeout = default_timeout

    async def run_script(self, identifier: str, script: OneOffScript) -> RunResult:
        """Run a OneOffScript with its own timeout, or the harness default if it sets none."""
        return await self.run(identifier, script, timeout_seconds=script.timeout)

    async def run(
        self,
        identifier: str,
        body: ScriptBody,
        timeout_seconds: Any = USE_DEFAULT_TIMEOUT,
    ) -> RunResult:
        """
        Execute `body` once for `identifier`.

        Args:
            identifier: Stable script name (usually its file name)
            body: Callable taking no arguments or a ScriptContext, sync or async
            timeout_seconds: Forced timeout; None or 0 disables it. Defaults
                to the harness default.

        Returns:
            RunResult describing the outcome. Script errors, timeouts, skips
            and lock contention are reported here, never raised.
        """
        timeout = timeout_seconds
        if timeout is USE_DEFAULT_TIMEOUT:
            timeout = self._default_timeout
        if not timeout or timeout <= 0:
            timeout = None

        log = logger.bind(identifier=identifier)
        started = time.monotonic()

        if not await self._locks.try_acquire(identifier):
            log.info("script_already_running")
            return RunResult(
                identifier=identifier,
                outcome=RunOutcome.LOCK_UNAVAILABLE,
                output=f"Script {identifier} is already running",
            )

        try:
            try:
                record = await self._store.mark_running(identifier, timeout_seconds=timeout)
            except RunStateError as e:
                log.bind(error=str(e)).error("script_start_not_recorded")
                return RunResult(
                    identifier=identifier,
                    outcome=RunOutcome.FAILED,
                    output=str(e),
                    duration=time.monotonic() - started,
                )

            log.bind(timeout=timeout).info("script_started")
            outcome, output, timed_out = await self._execute(
                identifier, record, body, timeout, started
            )

            duration = time.monotonic() - started
            if outcome is RunOutcome.SUCCESS:
                output = f"Script completed successfully in {duration:.2f}s"
                log.bind(duration=round(duration, 3)).info("script_succeeded")
            elif outcome is RunOutcome.SKIPPED:
                log.bind(duration=round(duration, 3), reason=output).info("script_skipped")
            else:
                log.bind(duration=round(duration, 3), timed_out=timed_out, error=output).error(
                    "script_failed"
                )

            await self._record_outcome(record, outcome, output, duration)
            return RunResult(
                identifier=identifier,
                outcome=outcome,
                output=output,
                duration=duration,
                timed_out=timed_out,
            )
        finally:
            await self._locks.release(identifier)

    async def _execute(
        self,
        identifier: str,
        record: ExecutedScript,
        body: ScriptBody,
        timeout: float | None,
        started: float,
    ) -> tuple[RunOutcome, str, bool]:
        """Run the body in a transaction under the timeout guard and classify the outcome."""
        guard: asyncio.Timeout | None = None
        skip: ScriptSkipped | None = None

        try:
            async with self._session_factory() as session:
                ctx = ScriptContext(identifier, record, session, timeout, started_at=started)
                async with session.begin():
                    try:
                        async with asyncio.timeout(timeout) as guard:
                            await _invoke(body, ctx)
                    except ScriptSkipped as e:
                        # Handled inside the transaction so it still commits
                        skip = e
        except ScriptTimeoutError as e:
            return RunOutcome.FAILED, str(e), True
        except TimeoutError as e:
            if guard is not None and guard.expired():
                return (
                    RunOutcome.FAILED,
                    f"Script execution exceeded timeout of {timeout} seconds",
                    True,
                )
            return RunOutcome.FAILED, format_error(e), False
        except Exception as e:
            return RunOutcome.FAILED, format_error(e), False

        if skip is not None:
            return RunOutcome.SKIPPED, skip.reason or SKIPPED_DEFAULT_MESSAGE, False
        return RunOutcome.SUCCESS, "", False

    async def _record_outcome(
        self,
        record: ExecutedScript,
        outcome: RunOutcome,
        output: str,
        duration: float,
    ) -> None:
        writers = {
            RunOutcome.SUCCESS: self._store.mark_success,
            RunOutcome.FAILED: self._store.mark_failed,
            RunOutcome.SKIPPED: self._store.mark_skipped,
        }
        try:
            await writers[outcome](record, output, duration)
        except RunStateError as e:
            # The outcome is under-reported, but the lock must still be released
            logger.bind(identifier=record.identifier, outcome=outcome.value, error=str(e)).error(
                "script_outcome_not_recorded"
            )
