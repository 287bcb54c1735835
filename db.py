from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def build_engine(database_url: str) -> AsyncEngine:
    """Асинхронный движок SQLAlchemy. Создаётся один раз в lifespan."""
    return create_async_engine(database_url, echo=False)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def get_db(request: Request):
    """Зависимость FastAPI, возвращающая асинхронную сессию БД.

    Пример использования в роутере:
        db: AsyncSession = Depends(get_db)

    Фабрика сессий берётся из контекста приложения (app.state.ctx), сессия
    закрывается при выходе из контекста.
    """
    async with request.app.state.ctx.sessionmaker() as session:
        yield session
