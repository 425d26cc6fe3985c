from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool
from app.core.config import settings

db_url = settings.DATABASE_URL

engine_kwargs = {"echo": False, "future": True}
if db_url.startswith("sqlite"):
    # One shared connection so the relay's tasks see each other's writes
    engine_kwargs.update(
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine_kwargs.update(pool_pre_ping=True)

engine = create_async_engine(db_url, **engine_kwargs)

# Create Session Factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)
