import logging
import sys
from typing import Any

from loguru import logger

from script_tracker.config import Settings

# stdlib loggers of the database stack, routed into loguru
INTERCEPTED_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "alembic", "aiosqlite", "asyncpg")

DEBUG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{extra[script_prefix]}</magenta><level>{message}</level>"
)
PLAIN_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[script_prefix]}{message}"


class InterceptHandler(logging.Handler):
    """Forward stdlib log records to loguru, keeping the original caller."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _tag_script(record: dict[str, Any]) -> None:
    """Prefix lines logged from inside a script run with the script identifier."""
    extra = record["extra"]
    extra.setdefault("name", record["name"])
    script = extra.get("script")
    extra["script_prefix"] = f"[{script}] " if script else ""


def setup_logging(settings: Settings) -> None:
    """Configure loguru for CLI runs: colours and call sites in debug, compact lines otherwise."""
    logger.remove()
    logger.configure(patcher=_tag_script)

    if settings.debug:
        logger.add(sys.stderr, level="DEBUG", format=DEBUG_FORMAT, backtrace=True, diagnose=True)
    else:
        logger.add(sys.stderr, level="INFO", format=PLAIN_FORMAT, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in INTERCEPTED_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [InterceptHandler()]
        stdlib_logger.propagate = False
    # SQL echo is only useful when debugging
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


def get_logger(name: str) -> Any:
    """Get a logger bound to a module name."""
    return logger.bind(name=name)
