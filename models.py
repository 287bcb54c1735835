import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import relationship

from clock import utcnow
from db import Base

USER_STATUS_ACTIVE = "active"
USER_STATUS_INACTIVE = "inactive"

TASK_STATUS_INCOMPLETE = "incomplete"
TASK_STATUS_COMPLETE = "complete"

ROLE_USER = "user"
ROLE_ADMIN = "admin"


class User(Base):
    """Модель пользователя.

    Поля:
    - email: уникальный идентификатор пользователя (регистр сохраняется как есть)
    - hashed_password: хэш пароля
    - role: дискриминатор роли, попадает в access token ("user" / "admin")
    - status / deleted_at: активность аккаунта; активен, только если
      status == "active" и deleted_at пуст
    - created_at / updated_at: метки времени
    """
    __tablename__ = "users"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(320), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String(32), nullable=False, default=ROLE_USER)
    status = Column(String(32), nullable=False, default=USER_STATUS_ACTIVE)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == USER_STATUS_ACTIVE and self.deleted_at is None


class Session(Base):
    """Refresh-сессия.

    Храним только HMAC refresh token; при refresh значение ротируется
    условным UPDATE, поэтому живым всегда остаётся одно значение.
    """
    __tablename__ = "sessions"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user = relationship("User", back_populates="sessions")
    refresh_token_hash = Column(String(128), nullable=False, unique=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    ip_address = Column(String(100), nullable=True)
    user_agent = Column(Text, nullable=True)


class PasswordResetToken(Base):
    """Одноразовый токен сброса пароля. Не больше одной записи на пользователя."""
    __tablename__ = "password_reset_tokens"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    token_hash = Column(String(128), nullable=False, unique=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    # revocation marker
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Task(Base):
    """Задача. Принадлежит ровно одному пользователю.

    completed_at заполнен тогда и только тогда, когда status == "complete".
    """
    __tablename__ = "tasks"
    __table_args__ = (
        CheckConstraint(
            "(status = 'complete') = (completed_at IS NOT NULL)", name="ck_tasks_completed_at_matches_status"
        ),
        Index("ix_tasks_owner_created_at_id", "owner_id", "created_at", "id"),
    )
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    owner = relationship("User", back_populates="tasks")
    title = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    status = Column(String(16), nullable=False, default=TASK_STATUS_INCOMPLETE)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AuditLog(Base):
    """Журнал security-событий. Только вставка."""
    __tablename__ = "audit_logs"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(64), nullable=True)
    entity_id = Column(String(64), nullable=True)
    ip_address = Column(String(100), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# Relationships defined on User for ORM convenience
User.tasks = relationship("Task", back_populates="owner", cascade="all, delete-orphan", passive_deletes=True)
User.sessions = relationship("Session", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
