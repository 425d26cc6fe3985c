import asyncio
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from app.db.base import Base

logger = structlog.get_logger()

async def create_tables(engine: AsyncEngine) -> None:
    # Trigger model registration
    from app.models.interaction import Interaction, InteractionMessage
    from app.models.user import User
    from app.models.vehicle import Vehicle

    try:
        async with asyncio.timeout(10):
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
    except TimeoutError:
        logger.error("db_init_timeout", message="Connection to database timed out after 10s.")
        raise
    logger.info("db_init_complete", tables=sorted(Base.metadata.tables))

async def main():
    from app.db.session import engine
    await create_tables(engine)

if __name__ == "__main__":
    asyncio.run(main())
