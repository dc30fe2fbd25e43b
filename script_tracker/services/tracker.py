"""
Wires settings into the engine, run record store, lock manager, harness and
script registry. Built once at process startup and passed to whatever
dispatches scripts (the CLI, a deploy hook, tests).
"""

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from script_tracker.config import Settings
from script_tracker.core.database import create_engine_and_sessionmaker
from script_tracker.core.datetime_utils import get_cutoff
from script_tracker.core.errors import ScriptLoadError
from script_tracker.core.logging import get_logger
from script_tracker.services.harness import RunOutcome, RunResult, ScriptHarness
from script_tracker.services.locking import create_lock_manager
from script_tracker.services.registry import ScriptRegistry
from script_tracker.services.run_store import RunRecordStore

logger = get_logger(__name__)


class ScriptTracker:
    """Runs pending scripts from the scripts directory, at most once each."""

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.settings = settings
        if engine is None or session_factory is None:
            engine, session_factory = create_engine_and_sessionmaker(settings)
        self.engine = engine
        self.session_factory = session_factory

        self.store = RunRecordStore(session_factory)
        self.locks = create_lock_manager(engine, session_factory, settings.lock_strategy)
        self.harness = ScriptHarness(
            session_factory,
            self.store,
            self.locks,
            default_timeout=settings.default_timeout_seconds,
        )
        self.registry = ScriptRegistry(settings.scripts_path)

    async def __aenter__(self) -> "ScriptTracker":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self.locks.close()
        await self.engine.dispose()

    async def pending(self) -> list[str]:
        """Script identifiers with no run record, in run order."""
        executed = await self.store.executed_identifiers()
        return [name for name in self.registry.identifiers() if name not in executed]

    async def run(self, name: str) -> RunResult | None:
        """Run one script by name. Returns None if it already has a run record."""
        identifier = self.registry.path_for(name).name
        if await self.store.exists(identifier):
            logger.bind(identifier=identifier).info("script_already_executed")
            return None

        script = self.registry.load(identifier)
        return await self.harness.run_script(identifier, script)

    async def run_pending(self, stop_on_failure: bool = True) -> list[RunResult]:
        """Run every pending script in file name order.

        A script file that cannot be loaded is reported as a failed result
        and counts as a failure for `stop_on_failure`.
        """
        results: list[RunResult] = []
        pending = await self.pending()
        logger.bind(count=len(pending)).info("pending_scripts_found")

        for identifier in pending:
            try:
                script = self.registry.load(identifier)
            except ScriptLoadError as e:
                # Nothing ran, so no record is written and the script stays pending
                logger.bind(identifier=identifier, error=str(e)).error("script_load_failed")
                result = RunResult(identifier=identifier, outcome=RunOutcome.FAILED, output=str(e))
            else:
                result = await self.harness.run_script(identifier, script)
            results.append(result)
            if not result.success and not result.skipped and stop_on_failure:
                logger.bind(identifier=identifier).warning("pending_run_stopped")
                break
        return results

    async def cleanup(self, older_than_minutes: int | None = None) -> int:
        """Fail running records older than the staleness threshold."""
        minutes = older_than_minutes or self.settings.stale_after_minutes
        older_than: datetime = get_cutoff(minutes=minutes)
        return await self.store.sweep_stale(older_than)
