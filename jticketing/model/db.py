from sqlalchemy.orm import declarative_base
from sqlalchemy.ext.asyncio import AsyncEngine


Base = declarative_base()


async def create_schema(engine: AsyncEngine) -> None:
    # import for side effect: registers every table on Base.metadata
    from .catalog import orm as _catalog  # noqa: F401
    from .order import orm as _order  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
