from datetime import datetime
from typing import Optional
import uuid

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AccessPayload, require_role
from context import AppContext, get_context
from db import get_db
from errors import NotFoundError
from models import ROLE_ADMIN, ROLE_USER
from schemas import (
    AdminStats,
    AuthorizedResponse,
    CleanupResult,
    JoinRequest,
    LoginRequest,
    LogoutRequest,
    PasswordChange,
    PasswordResetComplete,
    PasswordResetRequest,
    PasswordResetValidate,
    RefreshRequest,
    SuccessResponse,
    TaskCreate,
    TaskPage,
    TaskPatch,
    TaskRead,
    TaskSearch,
    TaskStatus,
    UserRead,
    ValidityResponse,
)
import crud
import services

# Split endpoints into multiple routers so OpenAPI groups appear with meaningful tags
auth_router = APIRouter(prefix="/auth", tags=["Auth"])
users_router = APIRouter(prefix="/users", tags=["Users"])
tasks_router = APIRouter(prefix="/tasks", tags=["Tasks"])
admin_router = APIRouter(tags=["Admin"])

# Combined router exported to main.py
router = APIRouter()

current_user = require_role(ROLE_USER)
current_admin = require_role(ROLE_ADMIN)
current_principal = require_role(ROLE_USER, ROLE_ADMIN)


def client_meta(request: Request):
    """IP (с учётом X-Forwarded-For) и User-Agent клиента для сессий и аудита."""
    user_agent = request.headers.get("user-agent")
    xff = request.headers.get("x-forwarded-for")
    if xff:
        ip_addr = xff.split(",")[0].strip()
    else:
        ip_addr = request.client.host if request.client else None
    return ip_addr, user_agent


@auth_router.post("/join", response_model=AuthorizedResponse, status_code=201)
async def join(
    payload: JoinRequest,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Регистрация: создаёт пользователя и сразу возвращает токены."""
    ip_addr, user_agent = client_meta(request)
    return await services.join(ctx, db, payload.email, payload.password, ip_addr, user_agent)


@auth_router.post("/login", response_model=AuthorizedResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Аутентификация: возвращает access и refresh токены."""
    ip_addr, user_agent = client_meta(request)
    return await services.login(ctx, db, payload.email, payload.password, ip_addr, user_agent)


@auth_router.post("/refresh", response_model=AuthorizedResponse)
async def refresh(
    payload: RefreshRequest,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Обновить токены по refresh token (старый refresh token сгорает)."""
    ip_addr, user_agent = client_meta(request)
    return await services.refresh(ctx, db, payload.refresh_token, ip_addr, user_agent)


@auth_router.post("/logout", response_model=SuccessResponse)
async def logout(
    payload: LogoutRequest,
    request: Request,
    principal: AccessPayload = Depends(current_principal),
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Завершить сессию по refresh token или все сессии, если он не передан."""
    ip_addr, user_agent = client_meta(request)
    return await services.logout(ctx, db, principal.id, payload.refresh_token, ip_addr, user_agent)


@auth_router.post("/password-reset", response_model=SuccessResponse)
async def password_reset_request(
    payload: PasswordResetRequest,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Запросить сброс пароля. Ответ не зависит от того, существует ли email."""
    ip_addr, user_agent = client_meta(request)
    return await services.request_password_reset(ctx, db, payload.email, ip_addr, user_agent)


@auth_router.post("/password-reset/validate", response_model=ValidityResponse)
async def password_reset_validate(
    payload: PasswordResetValidate,
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    return await services.validate_password_reset_token(ctx, db, payload.token)


@auth_router.post("/password-reset/complete", response_model=SuccessResponse)
async def password_reset_complete(
    payload: PasswordResetComplete,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Установить новый пароль по reset-токену; все сессии пользователя закрываются."""
    ip_addr, user_agent = client_meta(request)
    return await services.complete_password_reset(
        ctx, db, payload.token, payload.new_password, ip_addr, user_agent
    )


@users_router.get("/me", response_model=UserRead)
async def me(
    principal: AccessPayload = Depends(current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Информация о текущем пользователе."""
    user = await crud.get_user_by_id(db, principal.id)
    if user is None:
        raise NotFoundError("User not found")
    return user


@users_router.post("/change-password", response_model=SuccessResponse)
async def change_password(
    payload: PasswordChange,
    request: Request,
    principal: AccessPayload = Depends(current_principal),
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Change current user's password (requires current password)."""
    ip_addr, user_agent = client_meta(request)
    return await services.change_password(
        ctx, db, principal.id, payload.current_password, payload.new_password, ip_addr, user_agent
    )


@tasks_router.post("", response_model=TaskRead, status_code=201)
async def create_task(
    payload: TaskCreate,
    principal: AccessPayload = Depends(current_user),
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Создать задачу для текущего пользователя."""
    return await services.create_task(ctx, db, principal.id, payload)


@tasks_router.get("", response_model=TaskPage)
async def search_tasks(
    q: Optional[str] = None,
    status: Optional[TaskStatus] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    completed_from: Optional[datetime] = None,
    completed_to: Optional[datetime] = None,
    incomplete_first: bool = False,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    principal: AccessPayload = Depends(current_user),
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """List own tasks with filters and pagination.

    Сортировка: сначала новые (created_at desc); incomplete_first поднимает
    незавершённые наверх.
    """
    filters = TaskSearch(
        q=q,
        status=status,
        created_from=created_from,
        created_to=created_to,
        completed_from=completed_from,
        completed_to=completed_to,
        incomplete_first=incomplete_first,
        page=page,
        limit=limit,
    )
    return await services.search_tasks(ctx, db, principal.id, filters)


@tasks_router.get("/{task_id}", response_model=TaskRead)
async def get_task(
    task_id: uuid.UUID,
    principal: AccessPayload = Depends(current_user),
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Получить свою задачу по id. Чужая задача: тот же 404."""
    return await services.get_task(ctx, db, principal.id, task_id)


@tasks_router.patch("/{task_id}", response_model=TaskRead)
async def update_task(
    task_id: uuid.UUID,
    payload: TaskPatch,
    principal: AccessPayload = Depends(current_user),
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Частично обновить задачу; поля, которых нет в теле, не меняются."""
    return await services.update_task(ctx, db, principal.id, task_id, payload)


@tasks_router.delete("/{task_id}", status_code=204)
async def delete_task(
    task_id: uuid.UUID,
    principal: AccessPayload = Depends(current_user),
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Удалить свою задачу (жёсткое удаление)."""
    await services.delete_task(ctx, db, principal.id, task_id)
    return Response(status_code=204)


@admin_router.get("/admin/stats", response_model=AdminStats)
async def admin_stats(
    principal: AccessPayload = Depends(current_admin),
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Simple admin stats: counts of users, tasks, live sessions."""
    return await services.admin_stats(ctx, db)


@admin_router.post("/admin/users/{user_id}/deactivate", response_model=UserRead)
async def deactivate_user(
    user_id: uuid.UUID,
    request: Request,
    principal: AccessPayload = Depends(current_admin),
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Деактивировать пользователя; его токены перестают работать сразу."""
    ip_addr, user_agent = client_meta(request)
    return await services.deactivate_user(ctx, db, user_id, principal.id, ip_addr, user_agent)


@admin_router.post("/admin/cleanup-sessions", response_model=CleanupResult)
async def cleanup_sessions(
    principal: AccessPayload = Depends(current_admin),
    ctx: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Cleanup expired sessions and spent password reset tokens."""
    return await services.cleanup(ctx, db)


@admin_router.get("/healthz")
async def healthz():
    """Health check endpoint."""
    return {"status": "ok"}


# include sub-routers into the public router that main.py imports
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(tasks_router)
router.include_router(admin_router)
