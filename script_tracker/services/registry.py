"""Discovers and loads script files from the configured scripts directory."""

import importlib.util
import inspect
import re
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from script_tracker.core.datetime_utils import utc_now
from script_tracker.core.errors import ScriptLoadError
from script_tracker.core.logging import get_logger
from script_tracker.scripts.base import USE_DEFAULT_TIMEOUT, OneOffScript, ScriptContext
from script_tracker.scripts.template import render_script

logger = get_logger(__name__)


class FunctionScript(OneOffScript):
    """Adapts a module-level `execute` function to the OneOffScript interface."""

    def __init__(
        self,
        fn: Callable[..., Awaitable[Any] | Any],
        timeout: Any = USE_DEFAULT_TIMEOUT,
    ) -> None:
        self._fn = fn
        self.timeout = timeout

    async def execute(self, ctx: ScriptContext) -> None:
        result = self._fn(ctx) if inspect.signature(self._fn).parameters else self._fn()
        if inspect.isawaitable(result):
            await result


def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")
    if not slug:
        raise ValueError(f"Cannot build a script name from {name!r}")
    return slug


class ScriptRegistry:
    """Script files live in one directory; the file name is the script identifier."""

    def __init__(self, scripts_path: Path) -> None:
        self.scripts_path = Path(scripts_path)

    def discover(self) -> list[Path]:
        """All script files, sorted by name (timestamp prefixes give run order)."""
        if not self.scripts_path.is_dir():
            logger.bind(path=str(self.scripts_path)).warning("scripts_path_missing")
            return []
        return sorted(
            path
            for path in self.scripts_path.glob("*.py")
            if path.is_file() and not path.name.startswith("_")
        )

    def identifiers(self) -> list[str]:
        return [path.name for path in self.discover()]

    def path_for(self, name: str) -> Path:
        """Resolve an identifier, with or without the .py suffix."""
        candidates = [self.scripts_path / name]
        if not name.endswith(".py"):
            candidates.append(self.scripts_path / f"{name}.py")
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        raise ScriptLoadError(f"No script named {name!r} in {self.scripts_path}")

    def load(self, name: str) -> OneOffScript:
        """Import a script file and return its runnable script."""
        path = self.path_for(name)
        module_name = f"script_tracker_scripts.{path.stem}"

        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ScriptLoadError(f"Cannot import {path}")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            raise ScriptLoadError(f"Failed to import {path.name}: {type(e).__name__}: {e}") from e

        classes = [
            obj
            for obj in vars(module).values()
            if inspect.isclass(obj)
            and issubclass(obj, OneOffScript)
            and obj.__module__ == module.__name__
        ]
        if len(classes) > 1:
            names = ", ".join(sorted(c.__name__ for c in classes))
            raise ScriptLoadError(f"{path.name} defines more than one script class: {names}")
        if classes:
            return classes[0]()

        execute = getattr(module, "execute", None)
        if callable(execute):
            return FunctionScript(execute, timeout=getattr(module, "TIMEOUT", USE_DEFAULT_TIMEOUT))

        raise ScriptLoadError(f"{path.name} defines no OneOffScript subclass or execute function")

    def create(self, name: str, description: str = "") -> Path:
        """Write a new timestamped script file from the template."""
        slug = _slugify(name)
        timestamp = utc_now().strftime("%Y%m%d%H%M%S")
        path = self.scripts_path / f"{timestamp}_{slug}.py"
        if path.exists():
            raise FileExistsError(path)

        self.scripts_path.mkdir(parents=True, exist_ok=True)
        path.write_text(render_script(path.name, slug, description))
        logger.bind(path=str(path)).info("script_created")
        return path
