"""
Run record store.

Owns the durable state of the run state machine. Every operation opens its
own short-lived session and commits, so record writes never share a script
body's transaction: a rolled-back script still leaves its terminal record.
"""

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from script_tracker.core.datetime_utils import get_cutoff, to_naive_utc, utc_now
from script_tracker.core.errors import (
    DuplicateIdentifier,
    InvalidTimeout,
    InvalidTransition,
    PersistenceError,
)
from script_tracker.core.logging import get_logger
from script_tracker.models import ExecutedScript, ScriptStatus

logger = get_logger(__name__)

STALE_MESSAGE = "Script was marked as failed due to stale running status"
DEFAULT_STALE_AFTER_MINUTES = 60


class RunRecordStore:
    """Persists one ExecutedScript row per script identifier."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def exists(self, identifier: str) -> bool:
        """True if any record exists for the identifier, regardless of status."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(exists().where(ExecutedScript.identifier == identifier))
            )
            return bool(result.scalar())

    async def get(self, identifier: str) -> ExecutedScript | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ExecutedScript).where(ExecutedScript.identifier == identifier)
            )
            return result.scalar_one_or_none()

    async def executed_identifiers(self) -> set[str]:
        async with self._session_factory() as db:
            result = await db.execute(select(ExecutedScript.identifier))
            return set(result.scalars().all())

    async def list_runs(
        self,
        status: ScriptStatus | str | Iterable[ScriptStatus | str] | None = None,
        newest_first: bool = False,
    ) -> list[ExecutedScript]:
        """List records, optionally filtered by status, ordered by started_at."""
        stmt = select(ExecutedScript)
        if status is not None:
            if isinstance(status, str):
                statuses = [ScriptStatus(status)]
            else:
                statuses = [ScriptStatus(s) for s in status]
            stmt = stmt.where(ExecutedScript.status.in_(statuses))

        started_at = ExecutedScript.started_at
        order = started_at.desc() if newest_first else started_at.asc()
        stmt = stmt.order_by(order, ExecutedScript.identifier)

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def mark_running(
        self,
        identifier: str,
        timeout_seconds: float | None = None,
    ) -> ExecutedScript:
        """Create the record for a run that is starting.

        Raises:
            InvalidTimeout: timeout_seconds is not greater than 0
            DuplicateIdentifier: a record for this identifier already exists
            PersistenceError: the insert failed for any other reason
        """
        try:
            record = ExecutedScript(
                identifier=identifier,
                started_at=utc_now(),
                status=ScriptStatus.RUNNING,
                timeout_seconds=timeout_seconds,
            )
        except ValueError as e:
            raise InvalidTimeout(f"Invalid timeout for {identifier}: {e}") from e

        async with self._session_factory() as db:
            db.add(record)
            try:
                await db.commit()
                await db.refresh(record)
            except IntegrityError as e:
                await db.rollback()
                logger.bind(identifier=identifier).warning("run_record_duplicate")
                raise DuplicateIdentifier(identifier) from e
            except SQLAlchemyError as e:
                await db.rollback()
                raise PersistenceError(f"Failed to create run record for {identifier}: {e}") from e

        logger.bind(identifier=identifier, record_id=record.id).debug("run_record_running")
        return record

    async def mark_success(
        self, record: ExecutedScript, output: str | None = None, duration: float | None = None
    ) -> ExecutedScript:
        return await self._finish(record, ScriptStatus.SUCCESS, output, duration)

    async def mark_failed(
        self, record: ExecutedScript, output: str, duration: float | None = None
    ) -> ExecutedScript:
        return await self._finish(record, ScriptStatus.FAILED, output, duration)

    async def mark_skipped(
        self, record: ExecutedScript, output: str | None = None, duration: float | None = None
    ) -> ExecutedScript:
        return await self._finish(record, ScriptStatus.SKIPPED, output, duration)

    async def _finish(
        self,
        record: ExecutedScript,
        status: ScriptStatus,
        output: str | None,
        duration: float | None,
    ) -> ExecutedScript:
        # Guarded on status so a record can only leave `running` once
        stmt = (
            update(ExecutedScript)
            .where(
                ExecutedScript.id == record.id,
                ExecutedScript.status == ScriptStatus.RUNNING,
            )
            .values(status=status, output=output, duration_seconds=duration)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as db:
            try:
                result = await db.execute(stmt)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise PersistenceError(
                    f"Failed to mark {record.identifier} as {status.value}: {e}"
                ) from e

        if result.rowcount == 0:
            raise InvalidTransition(
                f"Cannot mark {record.identifier} as {status.value}: record is not running"
            )

        record.status = status
        record.output = output
        record.duration_seconds = duration
        logger.bind(identifier=record.identifier, status=status.value).debug("run_record_finished")
        return record

    async def sweep_stale(self, older_than: datetime | None = None) -> int:
        """Fail every running record started before `older_than` (default one hour ago).

        Meant for out-of-band maintenance; the harness never calls it.
        """
        cutoff = (
            to_naive_utc(older_than)
            if older_than is not None
            else get_cutoff(minutes=DEFAULT_STALE_AFTER_MINUTES)
        )
        stmt = (
            update(ExecutedScript)
            .where(
                ExecutedScript.status == ScriptStatus.RUNNING,
                ExecutedScript.started_at < cutoff,
            )
            .values(status=ScriptStatus.FAILED, output=STALE_MESSAGE)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as db:
            try:
                result = await db.execute(stmt)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise PersistenceError(f"Failed to sweep stale runs: {e}") from e

        count = result.rowcount
        logger.bind(count=count, cutoff=cutoff.isoformat()).info("stale_runs_swept")
        return count
