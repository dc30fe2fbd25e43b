"""Script-facing API: subclass OneOffScript and use the ScriptContext helpers."""

from .base import USE_DEFAULT_TIMEOUT, OneOffScript, ScriptContext, check_timeout

__all__ = [
    "USE_DEFAULT_TIMEOUT",
    "OneOffScript",
    "ScriptContext",
    "check_timeout",
]
