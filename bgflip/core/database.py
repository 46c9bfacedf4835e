from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from bgflip.core.config import settings

# Import ALL models to ensure they're registered with SQLModel.metadata
from bgflip.modules.images.models import ProcessedImage  # noqa: F401


def create_session_maker(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def create_worker_engine(database_url: str) -> AsyncEngine:
    """Engine for code that runs outside the API event loop (Celery tasks).

    Pooled connections are bound to the loop that opened them, so workers
    that start a fresh loop per task must not share the API's pool.
    """
    return create_async_engine(database_url, poolclass=NullPool, future=True)


# Create async engine
engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)

# Create async session factory
async_session_maker = create_session_maker(engine)


async def create_db_and_tables(db_engine: AsyncEngine = engine):
    """Create all tables if they don't exist."""
    async with db_engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))


async def get_session() -> AsyncSession:
    async with async_session_maker() as session:
        yield session
