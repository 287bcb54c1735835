from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable
import hashlib
import hmac
import logging
import secrets
import uuid

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from config import Settings
from context import AppContext, get_context
from db import get_db
from errors import ForbiddenError, UnauthorizedError
import crud

logger = logging.getLogger(__name__)

# Use simple HTTP Bearer token for documentation/UI (Swagger "Authorize" will
# show a single Bearer token input). auto_error=False: отсутствие заголовка
# обрабатываем сами и всегда отвечаем 401.
bearer_scheme = HTTPBearer(auto_error=False)


def build_password_context() -> CryptContext:
    """Конфигурация хеширования паролей через passlib.

    Используем Argon2: современный алгоритм KDF, подходящий для новых проектов.
    """
    return CryptContext(
        schemes=["argon2"],
        default="argon2",
        deprecated="auto",
        # Консервативные параметры Argon2: выставьте по нагрузке/железу в проде
        argon2__time_cost=2,
        argon2__memory_cost=65536,  # в KiB (64 MB)
        argon2__parallelism=2,
    )


async def hash_password(ctx: AppContext, password: str) -> str:
    """Вернуть хэш пароля.

    Хэширование: дорогая CPU-операция, поэтому уходит в threadpool и не
    блокирует event loop.
    """
    return await run_in_threadpool(ctx.pwd_context.hash, password)


async def verify_password(ctx: AppContext, plain: str, hashed: str) -> bool:
    """Проверить plain-пароль против хэша. Битый/неизвестный хэш = False."""
    try:
        return await run_in_threadpool(ctx.pwd_context.verify, plain, hashed)
    except (ValueError, TypeError):
        # passlib бросает UnknownHashError (подкласс ValueError) на чужой формат
        return False


async def dummy_verify(ctx: AppContext):
    """Потратить столько же времени, сколько verify, когда пользователя нет.

    Иначе время ответа выдаёт, существует ли email.
    """
    await run_in_threadpool(ctx.pwd_context.dummy_verify)


def generate_opaque_token() -> str:
    """Крипто-безопасный raw токен (refresh / password reset).

    Raw токен отдаётся клиенту один раз; в базе хранится его HMAC.
    """
    return secrets.token_urlsafe(64)


def hash_opaque_token(secret: str, raw: str) -> str:
    """HMAC-SHA256 от raw токена, hex-строка."""
    return hmac.new(secret.encode(), raw.encode(), hashlib.sha256).hexdigest()


class AccessPayload(BaseModel):
    """Проверенное содержимое access token."""
    id: uuid.UUID
    role: str


@dataclass
class IssuedTokens:
    access: str
    refresh: str
    expires_at: datetime
    refreshable_until: datetime


class TokenIssuer:
    """Выпуск и проверка токенов.

    access: JWT с полями sub, role, type="access", jti, iat, exp;
    refresh: непрозрачная случайная строка, живёт в таблице sessions.
    """

    def __init__(self, secret_key: str, algorithm: str, access_ttl: timedelta,
                 refresh_ttl: timedelta, token_hash_secret: str):
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._token_hash_secret = token_hash_secret

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            secret_key=settings.secret_key,
            algorithm=settings.algorithm,
            access_ttl=timedelta(minutes=settings.access_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_expire_days),
            token_hash_secret=settings.token_hash_secret,
        )

    def create_access_token(self, subject_id: uuid.UUID, role: str, now: datetime) -> str:
        payload = {
            "sub": str(subject_id),
            "role": role,
            "type": "access",
            # jti делает каждый выпущенный токен уникальным даже в пределах секунды
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int((now + self.access_ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def issue(self, subject_id: uuid.UUID, role: str, now: datetime) -> IssuedTokens:
        return IssuedTokens(
            access=self.create_access_token(subject_id, role, now),
            refresh=generate_opaque_token(),
            expires_at=now + self.access_ttl,
            refreshable_until=now + self.refresh_ttl,
        )

    def hash_token(self, raw: str) -> str:
        return hash_opaque_token(self._token_hash_secret, raw)

    def decode_access(self, token: str) -> AccessPayload:
        """Проверить подпись, срок и тип токена.

        Любая проблема: UnauthorizedError (401); клиент должен сделать refresh
        или заново залогиниться.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError:
            raise UnauthorizedError("access token expired", "The access token expired")
        except JWTError:
            raise UnauthorizedError("access token invalid", "The access token is invalid")
        if payload.get("type") != "access":
            raise UnauthorizedError("token invalid type", "The token is not an access token")
        try:
            return AccessPayload(id=uuid.UUID(str(payload.get("sub"))), role=str(payload.get("role")))
        except ValueError:
            raise UnauthorizedError("access token invalid", "The access token is invalid")


async def authorize(ctx: AppContext, db: AsyncSession, raw_token: str, roles: Iterable[str]) -> AccessPayload:
    """Authorization guard.

    1. подпись/срок/тип: иначе 401;
    2. роль из токена входит в roles: иначе 403;
    3. пользователь всё ещё существует и активен в БД: иначе 403.

    Третий шаг делает отзыв доступа мгновенным: деактивированный аккаунт
    теряет доступ, даже если его access token ещё не истёк.
    """
    payload = ctx.issuer.decode_access(raw_token)
    allowed = set(roles)
    if payload.role not in allowed:
        logger.info("Role mismatch", extra={"user_id": str(payload.id), "role": payload.role})
        raise ForbiddenError("Not enough permissions")
    user = await crud.get_user_by_id(db, payload.id)
    if not user or not user.is_active or user.role != payload.role:
        # Не сообщаем детали, чтобы не утекала информация о наличии пользователя
        raise ForbiddenError("Inactive or unknown user")
    return payload


def require_role(*roles: str):
    """Собрать зависимость FastAPI, пускающую только указанные роли.

    Пример:
        current=Depends(require_role("user"))
    """

    async def guard(
        credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
        ctx: AppContext = Depends(get_context),
        db: AsyncSession = Depends(get_db),
    ) -> AccessPayload:
        if not credentials or not credentials.credentials:
            raise UnauthorizedError("Not authenticated")
        return await authorize(ctx, db, credentials.credentials, roles)

    return guard
