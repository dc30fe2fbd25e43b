"""Track and safely run idempotent one-off maintenance scripts against a database."""

from script_tracker.config import Settings
from script_tracker.core.errors import (
    DuplicateIdentifier,
    InvalidTimeout,
    InvalidTransition,
    PersistenceError,
    RunStateError,
    ScriptLoadError,
    ScriptSkipped,
    ScriptTimeoutError,
    ScriptTrackerError,
)
from script_tracker.models import ExecutedScript, ScriptStatus
from script_tracker.scripts import OneOffScript, ScriptContext, check_timeout
from script_tracker.services.batches import process_in_batches
from script_tracker.services.harness import RunOutcome, RunResult, ScriptHarness
from script_tracker.services.locking import LockManager, LockStrategy, create_lock_manager
from script_tracker.services.run_store import RunRecordStore
from script_tracker.services.tracker import ScriptTracker

__version__ = "0.1.0"

__all__ = [
    "DuplicateIdentifier",
    "ExecutedScript",
    "InvalidTimeout",
    "InvalidTransition",
    "LockManager",
    "LockStrategy",
    "OneOffScript",
    "PersistenceError",
    "RunOutcome",
    "RunRecordStore",
    "RunResult",
    "RunStateError",
    "ScriptContext",
    "ScriptHarness",
    "ScriptLoadError",
    "ScriptSkipped",
    "ScriptStatus",
    "ScriptTimeoutError",
    "ScriptTracker",
    "ScriptTrackerError",
    "Settings",
    "check_timeout",
    "create_lock_manager",
    "process_in_batches",
]
