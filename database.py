import os
import logging
from dotenv import load_dotenv
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from models import Base

load_dotenv()

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./coin_arena.db"


def resolve_database_url(url: str | None) -> str:
    """Map a DATABASE_URL to an async driver URL (asyncpg / aiosqlite)."""
    if not url:
        return SQLITE_FALLBACK_URL
    if url.startswith("postgres://"):
        # Heroku/Render style scheme
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    engine = create_async_engine(url, echo=echo)
    if engine.dialect.name == "sqlite":
        # SQLite leaves foreign keys off per connection unless asked
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_fks(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    logger.warning("DATABASE_URL not found, using SQLite fallback.")

engine = make_engine(resolve_database_url(DATABASE_URL))
async_session = make_session_factory(engine)


async def init_async_db(target: AsyncEngine | None = None):
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
