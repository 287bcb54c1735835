from datetime import datetime
from enum import Enum
from typing import List, Optional
import uuid

from pydantic import BaseModel, EmailStr, Field, field_validator

from clock import as_utc

TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
PASSWORD_MIN_LENGTH = 8

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100
# OFFSET в SQL: знаковое 64-битное целое
MAX_OFFSET = 2**63 - 1


class TaskStatus(str, Enum):
    incomplete = "incomplete"
    complete = "complete"


# --- auth -----------------------------------------------------------------


class JoinRequest(BaseModel):
    """Registration payload."""
    email: EmailStr
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)


class LoginRequest(BaseModel):
    """JSON body for email/password login.

    Длину пароля здесь не проверяем: на любой неверный ввод ответ один и тот же.
    """
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    """Request body for refreshing access token using a refresh token."""
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    """Без refresh_token: завершить все сессии текущего пользователя."""
    refresh_token: Optional[str] = None


class UserRead(BaseModel):
    id: uuid.UUID
    email: str
    role: str
    status: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("created_at", "updated_at", "deleted_at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)


class TokenPair(BaseModel):
    access: str
    refresh: str
    token_type: str = "bearer"
    expired_at: datetime
    refreshable_until: datetime


class AuthorizedResponse(BaseModel):
    """Standard response of join/login/refresh: user plus fresh tokens."""
    user: UserRead
    token: TokenPair


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetValidate(BaseModel):
    token: str


class PasswordResetComplete(BaseModel):
    token: str
    new_password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)


class SuccessResponse(BaseModel):
    success: bool


class ValidityResponse(BaseModel):
    valid: bool


# --- tasks ----------------------------------------------------------------


class TaskCreate(BaseModel):
    """Schema for creating a task."""
    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = Field(None, max_length=DESCRIPTION_MAX_LENGTH)


class TaskPatch(BaseModel):
    """Partial update of a task.

    Отсутствующее поле и явный null: разные вещи: какие поля реально пришли,
    видно по `model_fields_set`. Применяется через `services.apply_task_patch`.
    """
    title: Optional[str] = Field(None, min_length=1, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = Field(None, max_length=DESCRIPTION_MAX_LENGTH)
    status: Optional[TaskStatus] = None


class TaskRead(BaseModel):
    """Schema for reading a task (API response)."""
    id: uuid.UUID
    owner_id: uuid.UUID
    title: str
    description: Optional[str]
    status: TaskStatus
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("completed_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)


class TaskSearch(BaseModel):
    """Фильтры и пагинация для поиска задач.

    page/limit не валидируются жёстко: нормализация (page <= 0 -> 1,
    limit -> 1..100) делается в `normalize_paging`.
    """
    q: Optional[str] = None
    status: Optional[TaskStatus] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    completed_from: Optional[datetime] = None
    completed_to: Optional[datetime] = None
    incomplete_first: bool = False
    page: Optional[int] = None
    limit: Optional[int] = None


class Pagination(BaseModel):
    current: int
    limit: int
    records: int
    pages: int


class TaskPage(BaseModel):
    pagination: Pagination
    data: List[TaskRead]


# --- admin ----------------------------------------------------------------


class AdminStats(BaseModel):
    users: int
    tasks: int
    active_sessions: int


class CleanupResult(BaseModel):
    sessions_deleted: int
    reset_tokens_deleted: int
