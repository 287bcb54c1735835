import os
import tempfile
import uuid

# Настройки должны быть в окружении до импорта main: app собирается при импорте
_TMP_DIR = tempfile.mkdtemp(prefix="todo-api-tests-")
DB_PATH = os.path.join(_TMP_DIR, "test.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{DB_PATH}"
os.environ["SECRET_KEY"] = "test-secret-key-0123456789abcdef"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session as OrmSession  # noqa: E402

from db import Base  # noqa: E402
from main import app  # noqa: E402
from models import User, ROLE_ADMIN  # noqa: E402
import models  # noqa: F401,E402

PASSWORD = "s3cretpass"


class Store:
    """Прямой доступ к тестовой БД для подготовки и проверки состояния.

    Каждая операция: своя короткая транзакция, чтобы не держать блокировку
    SQLite между запросами к приложению.
    """

    def __init__(self, engine):
        self.engine = engine

    def scalar(self, stmt):
        with OrmSession(self.engine) as s:
            return s.scalar(stmt)

    def scalars(self, stmt):
        with OrmSession(self.engine) as s:
            return list(s.scalars(stmt).all())

    def run(self, stmt):
        with OrmSession(self.engine) as s:
            s.execute(stmt)
            s.commit()

    def add(self, obj):
        with OrmSession(self.engine, expire_on_commit=False) as s:
            s.add(obj)
            s.commit()
        return obj


@pytest.fixture(scope="session")
def sync_engine():
    engine = create_engine(f"sqlite:///{DB_PATH}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def client(sync_engine):
    """Provide a TestClient for the app."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def ctx(client):
    return client.app.state.ctx


@pytest.fixture
def store(sync_engine):
    return Store(sync_engine)


def unique_email(prefix: str = "user") -> str:
    # Use a unique email per test to avoid collisions with existing DB state
    return f"{prefix}+{uuid.uuid4().hex}@example.com"


def bearer(body: dict) -> dict:
    return {"Authorization": f"Bearer {body['token']['access']}"}


def user_id(body: dict) -> uuid.UUID:
    return uuid.UUID(body["user"]["id"])


@pytest.fixture
def register(client):
    """Factory: зарегистрировать нового пользователя, вернуть (email, тело ответа)."""

    def _register(password: str = PASSWORD, prefix: str = "user"):
        email = unique_email(prefix)
        resp = client.post("/auth/join", json={"email": email, "password": password})
        assert resp.status_code == 201, resp.text
        return email, resp.json()

    return _register


@pytest.fixture
def admin(client, ctx, store):
    """Создать администратора напрямую в БД и залогинить его."""
    email = unique_email("admin")
    store.add(User(email=email, hashed_password=ctx.pwd_context.hash(PASSWORD), role=ROLE_ADMIN))
    resp = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return resp.json()
