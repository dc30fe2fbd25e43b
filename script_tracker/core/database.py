import ssl
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from script_tracker.config import Settings
from script_tracker.core.logging import get_logger
from script_tracker.models import Base

logger = get_logger(__name__)


def _prepare_url(url: str) -> tuple[str, dict]:
    """
    Prepare a connection URL for its async driver.

    asyncpg doesn't accept libpq params like sslmode or channel_binding.
    We strip them and handle SSL via connect_args.

    - For remote postgres hosts: Use SSL with default context
    - For local dev (localhost/127.0.0.1/db) and other drivers: untouched
    """
    parsed = urlparse(url)
    if not parsed.scheme.startswith("postgresql+asyncpg"):
        return url, {}

    params = parse_qs(parsed.query)

    # Remove unsupported asyncpg params
    unsupported = ["sslmode", "channel_binding", "options"]
    for param in unsupported:
        params.pop(param, None)

    new_query = urlencode(params, doseq=True)
    clean_url = urlunparse(parsed._replace(query=new_query))

    hostname = parsed.hostname or ""
    is_local = hostname in ("localhost", "127.0.0.1", "db")

    if is_local:
        return clean_url, {}
    else:
        ssl_context = ssl.create_default_context()
        return clean_url, {"ssl": ssl_context}


def create_engine_and_sessionmaker(
    settings: Settings,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Build the engine and session factory for a settings instance."""
    clean_url, connect_args = _prepare_url(settings.database_url)

    engine_kwargs: dict = {"echo": settings.debug, "connect_args": connect_args}
    if not clean_url.startswith("sqlite"):
        engine_kwargs.update(pool_pre_ping=True, pool_size=5, max_overflow=10)

    engine = create_async_engine(clean_url, **engine_kwargs)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.bind(dialect=engine.dialect.name).debug("database_engine_created")
    return engine, session_factory


async def create_schema(engine: AsyncEngine) -> None:
    """Create tables directly from the models (dev and tests; production uses alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
