"""Бизнес-операции: регистрация, вход, refresh, сброс пароля, задачи.

Каждая функция получает AppContext и AsyncSession явно, сама управляет
транзакцией и либо возвращает готовый DTO, либо бросает ровно одну ошибку
из errors.py.
"""
from typing import Optional, Tuple
from datetime import datetime, timedelta
import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import IssuedTokens, dummy_verify, generate_opaque_token, hash_password, verify_password
from clock import as_utc, is_expired
from context import AppContext
from errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidResetTokenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from models import (
    PasswordResetToken,
    Session,
    Task,
    User,
    ROLE_USER,
    TASK_STATUS_COMPLETE,
    TASK_STATUS_INCOMPLETE,
    USER_STATUS_ACTIVE,
    USER_STATUS_INACTIVE,
)
from schemas import (
    AdminStats,
    AuthorizedResponse,
    CleanupResult,
    DEFAULT_PAGE_LIMIT,
    MAX_OFFSET,
    MAX_PAGE_LIMIT,
    Pagination,
    SuccessResponse,
    TaskCreate,
    TaskPage,
    TaskPatch,
    TaskRead,
    TaskSearch,
    TokenPair,
    UserRead,
    ValidityResponse,
)
import crud

logger = logging.getLogger(__name__)


# --- helpers --------------------------------------------------------------


def _authorized(user: User, tokens: IssuedTokens) -> AuthorizedResponse:
    return AuthorizedResponse(
        user=UserRead.model_validate(user),
        token=TokenPair(
            access=tokens.access,
            refresh=tokens.refresh,
            expired_at=tokens.expires_at,
            refreshable_until=tokens.refreshable_until,
        ),
    )


async def _open_session(
    ctx: AppContext, db: AsyncSession, user: User, now: datetime,
    ip_address: Optional[str], user_agent: Optional[str],
) -> IssuedTokens:
    """Выпустить токены и завести под refresh token новую строку sessions."""
    tokens = ctx.issuer.issue(user.id, user.role, now)
    await crud.add_session(
        db,
        Session(
            user_id=user.id,
            refresh_token_hash=ctx.issuer.hash_token(tokens.refresh),
            expires_at=tokens.refreshable_until,
            created_at=now,
            updated_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        ),
    )
    return tokens


# --- join / login ---------------------------------------------------------


async def join(
    ctx: AppContext, db: AsyncSession, email: str, password: str,
    ip_address: Optional[str] = None, user_agent: Optional[str] = None,
) -> AuthorizedResponse:
    """Регистрация: 409, если email занят; иначе активный пользователь + токены."""
    if await crud.get_user_by_email(db, email):
        raise ConflictError()

    hashed = await hash_password(ctx, password)
    now = ctx.now()
    user = User(
        email=email,
        hashed_password=hashed,
        role=ROLE_USER,
        status=USER_STATUS_ACTIVE,
        created_at=now,
        updated_at=now,
    )
    try:
        await crud.add_user(db, user)
    except IntegrityError:
        # параллельная регистрация того же email: уникальность держит БД
        await db.rollback()
        raise ConflictError()
    tokens = await _open_session(ctx, db, user, now, ip_address, user_agent)
    await crud.add_audit_log(
        db, "join", now, user_id=user.id, entity_type="user", entity_id=str(user.id),
        ip_address=ip_address, user_agent=user_agent,
    )
    await db.commit()
    logger.info("User joined", extra={"user_id": str(user.id)})
    return _authorized(user, tokens)


async def login(
    ctx: AppContext, db: AsyncSession, email: str, password: str,
    ip_address: Optional[str] = None, user_agent: Optional[str] = None,
) -> AuthorizedResponse:
    """Вход по email/паролю.

    Неизвестный email, неверный пароль и неактивный аккаунт дают одну и ту
    же ошибку InvalidCredentialsError.
    """
    user = await crud.get_user_by_email(db, email)
    if user is None:
        await dummy_verify(ctx)
        logger.info("Login failed")
        raise InvalidCredentialsError()
    if not await verify_password(ctx, password, user.hashed_password):
        logger.info("Login failed", extra={"user_id": str(user.id)})
        raise InvalidCredentialsError()
    if not user.is_active:
        logger.info("Login rejected for inactive account", extra={"user_id": str(user.id)})
        raise InvalidCredentialsError()

    now = ctx.now()
    # Если хэш устарел (needs_update): обновим на текущую схему
    if ctx.pwd_context.needs_update(user.hashed_password):
        user.hashed_password = await hash_password(ctx, password)
        user.updated_at = now

    tokens = await _open_session(ctx, db, user, now, ip_address, user_agent)
    await crud.add_audit_log(
        db, "login", now, user_id=user.id, entity_type="user", entity_id=str(user.id),
        ip_address=ip_address, user_agent=user_agent,
    )
    await db.commit()
    logger.info("User logged in", extra={"user_id": str(user.id)})
    return _authorized(user, tokens)


# --- refresh / logout -----------------------------------------------------


async def refresh(
    ctx: AppContext, db: AsyncSession, refresh_token: str,
    ip_address: Optional[str] = None, user_agent: Optional[str] = None,
) -> AuthorizedResponse:
    """Обновить пару токенов по refresh token с ротацией.

    Старый refresh token после успешной ротации больше не найдётся, поэтому
    повторное использование даёт 401 даже до истечения исходного срока.
    """
    if not refresh_token:
        raise UnauthorizedError("Invalid refresh token")
    old_hash = ctx.issuer.hash_token(refresh_token)
    session = await crud.get_session_by_hash(db, old_hash)
    if session is None:
        logger.warning("Unknown or reused refresh token")
        raise UnauthorizedError("Invalid refresh token")

    now = ctx.now()
    if is_expired(session.expires_at, now):
        raise UnauthorizedError("Refresh token expired")

    user = await crud.get_user_by_id(db, session.user_id)
    if user is None or not user.is_active:
        raise UnauthorizedError("Invalid refresh token")

    tokens = ctx.issuer.issue(user.id, user.role, now)
    rotated = await crud.rotate_session(
        db,
        session.id,
        old_hash,
        ctx.issuer.hash_token(tokens.refresh),
        tokens.refreshable_until,
        now,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    if not rotated:
        # конкурентный refresh уже заменил токен
        await db.rollback()
        logger.warning("Refresh token lost rotation race", extra={"session_id": str(session.id)})
        raise UnauthorizedError("Invalid refresh token")
    await crud.add_audit_log(
        db, "token_refresh", now, user_id=user.id, entity_type="session", entity_id=str(session.id),
        ip_address=ip_address, user_agent=user_agent,
    )
    await db.commit()
    return _authorized(user, tokens)


async def logout(
    ctx: AppContext, db: AsyncSession, user_id: uuid.UUID, refresh_token: Optional[str] = None,
    ip_address: Optional[str] = None, user_agent: Optional[str] = None,
) -> SuccessResponse:
    """Завершить одну сессию (по refresh token) или все сессии пользователя."""
    now = ctx.now()
    if refresh_token:
        session = await crud.get_session_by_hash(db, ctx.issuer.hash_token(refresh_token))
        if session is None or session.user_id != user_id:
            raise NotFoundError("Session not found")
        await crud.delete_session(db, session.id)
    else:
        await crud.delete_sessions_for_user(db, user_id)
    await crud.add_audit_log(
        db, "logout", now, user_id=user_id, entity_type="user", entity_id=str(user_id),
        ip_address=ip_address, user_agent=user_agent,
    )
    await db.commit()
    return SuccessResponse(success=True)


async def change_password(
    ctx: AppContext, db: AsyncSession, user_id: uuid.UUID, current_password: str, new_password: str,
    ip_address: Optional[str] = None, user_agent: Optional[str] = None,
) -> SuccessResponse:
    """Смена пароля с проверкой текущего. Все сессии закрываются."""
    user = await crud.get_user_by_id(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    if not await verify_password(ctx, current_password, user.hashed_password):
        raise ValidationError("Current password incorrect")
    hashed = await hash_password(ctx, new_password)
    now = ctx.now()
    user.hashed_password = hashed
    user.updated_at = now
    await crud.delete_sessions_for_user(db, user.id)
    await crud.add_audit_log(
        db, "password_change", now, user_id=user.id, entity_type="user", entity_id=str(user.id),
        ip_address=ip_address, user_agent=user_agent,
    )
    await db.commit()
    return SuccessResponse(success=True)


# --- password reset -------------------------------------------------------


def _reset_token_live(row: Optional[PasswordResetToken], now: datetime) -> bool:
    return (
        row is not None
        and row.used_at is None
        and row.deleted_at is None
        and not is_expired(row.expires_at, now)
    )


async def request_password_reset(
    ctx: AppContext, db: AsyncSession, email: str,
    ip_address: Optional[str] = None, user_agent: Optional[str] = None,
) -> SuccessResponse:
    """Запросить сброс пароля.

    Ответ всегда один и тот же, есть такой email или нет. Для активного
    пользователя выпускается новый токен (старый перезаписывается) и
    отправляется письмо.
    """
    user = await crud.get_user_by_email(db, email)
    if user is None or not user.is_active:
        return SuccessResponse(success=True)

    # rollback ниже экспайрит user, поэтому значения забираем заранее
    user_id, user_email = user.id, user.email
    now = ctx.now()
    raw = generate_opaque_token()
    token_hash = ctx.issuer.hash_token(raw)
    expires_at = now + timedelta(minutes=ctx.settings.password_reset_expire_minutes)
    try:
        row = await crud.upsert_reset_token(db, user_id, token_hash, expires_at, now)
    except IntegrityError:
        # параллельный запрос успел вставить строку: повтор станет UPDATE
        await db.rollback()
        logger.info("Password reset upsert raced, retrying", extra={"user_id": str(user_id)})
        row = await crud.upsert_reset_token(db, user_id, token_hash, expires_at, now)
    await crud.add_audit_log(
        db, "password_reset_requested", now, user_id=user_id,
        entity_type="password_reset_token", entity_id=str(row.id),
        ip_address=ip_address, user_agent=user_agent,
    )
    await db.commit()
    ctx.mailer.send_password_reset(user_email, raw, expires_at, now)
    logger.info("Password reset requested", extra={"user_id": str(user_id)})
    return SuccessResponse(success=True)


async def validate_password_reset_token(ctx: AppContext, db: AsyncSession, token: str) -> ValidityResponse:
    """True только для существующего, неистёкшего, неиспользованного и неотозванного токена."""
    if not token:
        return ValidityResponse(valid=False)
    row = await crud.get_reset_token_by_hash(db, ctx.issuer.hash_token(token))
    return ValidityResponse(valid=_reset_token_live(row, ctx.now()))


async def complete_password_reset(
    ctx: AppContext, db: AsyncSession, token: str, new_password: str,
    ip_address: Optional[str] = None, user_agent: Optional[str] = None,
) -> SuccessResponse:
    """Завершить сброс пароля.

    Токен расходуется условным UPDATE, пароль меняется, все сессии
    пользователя удаляются. Любая причина отказа даёт одну и ту же ошибку.
    """
    if not token:
        raise InvalidResetTokenError()
    row = await crud.get_reset_token_by_hash(db, ctx.issuer.hash_token(token))
    if not _reset_token_live(row, ctx.now()):
        raise InvalidResetTokenError()
    user = await crud.get_user_by_id(db, row.user_id)
    if user is None or not user.is_active:
        raise InvalidResetTokenError()

    # хэшируем до первой записи, чтобы не держать транзакцию на время KDF
    hashed = await hash_password(ctx, new_password)
    now = ctx.now()
    if not await crud.consume_reset_token(db, row.id, now):
        await db.rollback()
        raise InvalidResetTokenError()
    user.hashed_password = hashed
    user.updated_at = now
    await crud.delete_sessions_for_user(db, user.id)
    await crud.add_audit_log(
        db, "password_reset", now, user_id=user.id, entity_type="user", entity_id=str(user.id),
        ip_address=ip_address, user_agent=user_agent,
    )
    await db.commit()
    logger.info("Password reset completed", extra={"user_id": str(user.id)})
    return SuccessResponse(success=True)


# --- admin ----------------------------------------------------------------


async def deactivate_user(
    ctx: AppContext, db: AsyncSession, user_id: uuid.UUID, actor_id: uuid.UUID,
    ip_address: Optional[str] = None, user_agent: Optional[str] = None,
) -> UserRead:
    """Деактивировать аккаунт: сессии удаляются, reset-токен отзывается.

    Уже выданные access token перестают работать сразу: guard сверяется с БД.
    """
    user = await crud.get_user_by_id(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    now = ctx.now()
    user.status = USER_STATUS_INACTIVE
    user.updated_at = now
    await crud.delete_sessions_for_user(db, user.id)
    await crud.revoke_reset_tokens_for_user(db, user.id, now)
    await crud.add_audit_log(
        db, "account_deactivated", now, user_id=actor_id, entity_type="user", entity_id=str(user.id),
        ip_address=ip_address, user_agent=user_agent,
    )
    await db.commit()
    logger.info("User deactivated", extra={"user_id": str(user.id), "actor_id": str(actor_id)})
    return UserRead.model_validate(user)


async def admin_stats(ctx: AppContext, db: AsyncSession) -> AdminStats:
    return AdminStats(
        users=await crud.count_users(db),
        tasks=await crud.count_tasks(db),
        active_sessions=await crud.count_live_sessions(db, ctx.now()),
    )


async def cleanup(ctx: AppContext, db: AsyncSession) -> CleanupResult:
    """Удалить истёкшие сессии и отработавшие reset-токены."""
    now = ctx.now()
    sessions_deleted = await crud.delete_expired_sessions(db, now)
    tokens_deleted = await crud.delete_dead_reset_tokens(db, now)
    await db.commit()
    return CleanupResult(sessions_deleted=sessions_deleted, reset_tokens_deleted=tokens_deleted)


# --- tasks ----------------------------------------------------------------


def _check_title(title: Optional[str]):
    if title is None or not title.strip():
        raise ValidationError("title must not be empty")


def apply_task_patch(task: Task, patch: TaskPatch, now: datetime) -> bool:
    """Применить частичное обновление к задаче. Возвращает True, если что-то изменилось.

    Правила:
    1. поле, которого нет в запросе, не трогаем;
    2. title: null: ошибка валидации (заголовок обязателен);
    3. description: null: очищает описание;
    4. смена status incomplete -> complete ставит completed_at = now,
       complete -> incomplete очищает его; тот же статус ничего не меняет;
    5. при любом изменении обновляется updated_at.
    """
    fields = patch.model_fields_set
    changed = False
    if "title" in fields:
        _check_title(patch.title)
        if patch.title != task.title:
            task.title = patch.title
            changed = True
    if "description" in fields and patch.description != task.description:
        task.description = patch.description
        changed = True
    if "status" in fields:
        if patch.status is None:
            raise ValidationError("status must not be null")
        new_status = patch.status.value
        if new_status != task.status:
            task.status = new_status
            task.completed_at = now if new_status == TASK_STATUS_COMPLETE else None
            changed = True
    if changed:
        task.updated_at = now
    return changed


def normalize_paging(page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
    """page <= 0 или None -> 1; limit ограничивается диапазоном 1..100 (по умолчанию 20).

    Сверху page ограничен так, чтобы (page - 1) * limit помещался в OFFSET.
    """
    if page is None or page <= 0:
        page = 1
    if limit is None:
        limit = DEFAULT_PAGE_LIMIT
    limit = max(1, min(limit, MAX_PAGE_LIMIT))
    page = min(page, MAX_OFFSET // limit + 1)
    return page, limit


async def _owned_task(db: AsyncSession, owner_id: uuid.UUID, task_id: uuid.UUID) -> Task:
    task = await crud.get_task_for_owner(db, owner_id, task_id)
    if task is None:
        raise NotFoundError("Task not found")
    return task


async def create_task(ctx: AppContext, db: AsyncSession, owner_id: uuid.UUID, payload: TaskCreate) -> TaskRead:
    _check_title(payload.title)
    now = ctx.now()
    task = Task(
        owner_id=owner_id,
        title=payload.title,
        description=payload.description,
        status=TASK_STATUS_INCOMPLETE,
        completed_at=None,
        created_at=now,
        updated_at=now,
    )
    await crud.add_task(db, task)
    await db.commit()
    return TaskRead.model_validate(task)


async def get_task(ctx: AppContext, db: AsyncSession, owner_id: uuid.UUID, task_id: uuid.UUID) -> TaskRead:
    return TaskRead.model_validate(await _owned_task(db, owner_id, task_id))


async def update_task(
    ctx: AppContext, db: AsyncSession, owner_id: uuid.UUID, task_id: uuid.UUID, patch: TaskPatch
) -> TaskRead:
    task = await _owned_task(db, owner_id, task_id)
    if apply_task_patch(task, patch, ctx.now()):
        await db.commit()
    return TaskRead.model_validate(task)


async def delete_task(ctx: AppContext, db: AsyncSession, owner_id: uuid.UUID, task_id: uuid.UUID):
    task = await _owned_task(db, owner_id, task_id)
    await crud.delete_task(db, task)
    await db.commit()


async def search_tasks(ctx: AppContext, db: AsyncSession, owner_id: uuid.UUID, filters: TaskSearch) -> TaskPage:
    """Поиск по задачам владельца с пагинацией.

    pages = ceil(records / limit); пустой результат: не ошибка.
    """
    page, limit = normalize_paging(filters.page, filters.limit)
    filters = filters.model_copy(
        update={
            "created_from": as_utc(filters.created_from),
            "created_to": as_utc(filters.created_to),
            "completed_from": as_utc(filters.completed_from),
            "completed_to": as_utc(filters.completed_to),
        }
    )
    items, total = await crud.search_tasks(db, owner_id, filters, page, limit)
    return TaskPage(
        pagination=Pagination(current=page, limit=limit, records=total, pages=-(-total // limit)),
        data=[TaskRead.model_validate(t) for t in items],
    )
