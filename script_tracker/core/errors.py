"""Exception hierarchy for script tracking and execution."""


class ScriptTrackerError(Exception):
    """Base class for all script tracker errors."""


class ScriptSkipped(ScriptTrackerError):  # noqa: N818
    """Raised by a script body to stop early because no action is needed.

    Not a failure: the harness records the run as ``skipped``.
    """

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(reason or "Skipping script")


class ScriptTimeoutError(ScriptTrackerError, TimeoutError):
    """Raised when a script runs past its time budget."""


class ScriptLoadError(ScriptTrackerError):
    """A script file could not be imported or defines no runnable script."""


class RunStateError(ScriptTrackerError):
    """Base class for run record store failures."""


class DuplicateIdentifier(RunStateError):  # noqa: N818
    """A run record already exists for this identifier."""

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"A run record already exists for {identifier!r}")


class PersistenceError(RunStateError):
    """The store failed to durably record a state transition."""


class InvalidTransition(RunStateError):  # noqa: N818
    """A terminal transition was attempted on a record that is not running."""


class InvalidTimeout(RunStateError, ValueError):  # noqa: N818
    """A run record was given a timeout that is not greater than 0."""
