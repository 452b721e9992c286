from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from app.settings import settings
from app.errors import PersistenceError

engine = create_async_engine(settings.DATABASE_URL, echo=False)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

@asynccontextmanager
async def store_session(session_factory: async_sessionmaker = AsyncSessionLocal):
    """Open a store session; SQLAlchemy failures surface as PersistenceError."""
    async with session_factory() as db:
        try:
            yield db
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError(detail=str(exc)) from exc
