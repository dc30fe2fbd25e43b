from script_tracker.models.base import Base
from script_tracker.models.executed_script import DEFAULT_TIMEOUT, ExecutedScript, ScriptStatus

__all__ = [
    "Base",
    "DEFAULT_TIMEOUT",
    "ExecutedScript",
    "ScriptStatus",
]
