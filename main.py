from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI

from config import Settings
from context import build_context
from routes import router as api_router

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Собрать приложение.

    Настройки читаются здесь, при старте процесса: битая конфигурация
    (например, нет SECRET_KEY) роняет запуск с ConfigError, а не отдельные
    запросы.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan hook: собираем AppContext и освобождаем ресурсы при shutdown.

        Явно вызываем engine.dispose() для аккуратного закрытия пула.
        """
        logging.basicConfig(level=settings.log_level)
        ctx = build_context(settings)
        app.state.ctx = ctx
        logger.info("Application started")
        yield
        await ctx.engine.dispose()

    app = FastAPI(lifespan=lifespan, title="Todo API", description="Async FastAPI + SQLAlchemy")
    # Подключаем маршруты из модуля routes.py
    app.include_router(api_router)
    return app


app = create_app()
