from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable
from datetime import datetime

from fastapi import Request
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from clock import as_utc, utcnow
from config import Settings
from emailer import OutboxMailer

if TYPE_CHECKING:
    from auth import TokenIssuer


@dataclass
class AppContext:
    """Всё, что нужно сервисным функциям: настройки, БД, подписчик токенов,
    хэшер паролей, почта и часы. Собирается один раз в lifespan и передаётся
    явно.
    """
    settings: Settings
    engine: AsyncEngine
    sessionmaker: async_sessionmaker
    issuer: "TokenIssuer"
    pwd_context: CryptContext
    mailer: OutboxMailer = field(default_factory=OutboxMailer)
    clock: Callable[[], datetime] = utcnow

    def now(self) -> datetime:
        # всегда UTC, даже если подменённые часы отдают другую зону
        return as_utc(self.clock())


def build_context(settings: Settings) -> AppContext:
    # локальные импорты: auth импортирует AppContext для аннотаций
    from auth import TokenIssuer, build_password_context
    from db import build_engine, build_sessionmaker

    engine = build_engine(settings.database_url)
    return AppContext(
        settings=settings,
        engine=engine,
        sessionmaker=build_sessionmaker(engine),
        issuer=TokenIssuer.from_settings(settings),
        pwd_context=build_password_context(),
    )


def get_context(request: Request) -> AppContext:
    """Зависимость FastAPI: контекст приложения из app.state."""
    return request.app.state.ctx
