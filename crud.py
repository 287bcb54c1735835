"""Доступ к хранилищу.

Функции не делают commit: транзакцией управляет сервисный слой, чтобы
многошаговые операции (например, завершение сброса пароля) применялись
целиком или не применялись вовсе.
"""
from datetime import datetime
from typing import List, Optional, Tuple
import uuid

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLog, PasswordResetToken, Session, Task, User, TASK_STATUS_COMPLETE
from schemas import TaskSearch


# --- users ----------------------------------------------------------------


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    """Вернуть объект User по email или None.

    Сравнение точное: email хранится и ищется как есть.
    """
    q = await db.execute(select(User).where(User.email == email))
    return q.scalars().first()


async def get_user_by_id(db: AsyncSession, user_id: uuid.UUID) -> Optional[User]:
    """Return User by id or None."""
    q = await db.execute(select(User).where(User.id == user_id))
    return q.scalars().first()


async def add_user(db: AsyncSession, user: User) -> User:
    db.add(user)
    await db.flush()
    return user


async def count_users(db: AsyncSession) -> int:
    q = await db.execute(select(func.count()).select_from(User))
    return q.scalar() or 0


# --- sessions -------------------------------------------------------------


async def add_session(db: AsyncSession, session: Session) -> Session:
    db.add(session)
    await db.flush()
    return session


async def get_session_by_hash(db: AsyncSession, token_hash: str) -> Optional[Session]:
    q = await db.execute(select(Session).where(Session.refresh_token_hash == token_hash))
    return q.scalars().first()


async def rotate_session(
    db: AsyncSession,
    session_id: uuid.UUID,
    old_hash: str,
    new_hash: str,
    expires_at: datetime,
    now: datetime,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> bool:
    """Ротация refresh token одним условным UPDATE.

    Строка меняется, только если в ней всё ещё лежит old_hash. Из двух
    конкурентных refresh с одним и тем же токеном выигрывает ровно один,
    второй получает False.
    """
    stmt = (
        update(Session)
        .where(Session.id == session_id, Session.refresh_token_hash == old_hash)
        .values(
            refresh_token_hash=new_hash,
            expires_at=expires_at,
            updated_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(stmt)
    return res.rowcount == 1


async def delete_session(db: AsyncSession, session_id: uuid.UUID) -> int:
    res = await db.execute(
        delete(Session).where(Session.id == session_id).execution_options(synchronize_session=False)
    )
    return res.rowcount


async def delete_sessions_for_user(db: AsyncSession, user_id: uuid.UUID) -> int:
    stmt = delete(Session).where(Session.user_id == user_id)
    res = await db.execute(stmt.execution_options(synchronize_session=False))
    return res.rowcount


async def count_live_sessions(db: AsyncSession, now: datetime) -> int:
    q = await db.execute(select(func.count()).select_from(Session).where(Session.expires_at > now))
    return q.scalar() or 0


async def delete_expired_sessions(db: AsyncSession, now: datetime) -> int:
    res = await db.execute(
        delete(Session).where(Session.expires_at <= now).execution_options(synchronize_session=False)
    )
    return res.rowcount


# --- password reset tokens ------------------------------------------------


async def get_reset_token_by_hash(db: AsyncSession, token_hash: str) -> Optional[PasswordResetToken]:
    q = await db.execute(select(PasswordResetToken).where(PasswordResetToken.token_hash == token_hash))
    return q.scalars().first()


async def upsert_reset_token(
    db: AsyncSession, user_id: uuid.UUID, token_hash: str, expires_at: datetime, now: datetime
) -> PasswordResetToken:
    """Создать или заменить reset-токен пользователя.

    На пользователя всегда одна запись (unique user_id): новый запрос
    перезаписывает хэш и срок и сбрасывает used_at/deleted_at, так что
    предыдущий токен перестаёт работать.
    """
    q = await db.execute(select(PasswordResetToken).where(PasswordResetToken.user_id == user_id))
    row = q.scalars().first()
    if row is None:
        row = PasswordResetToken(
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
    else:
        row.token_hash = token_hash
        row.expires_at = expires_at
        row.used_at = None
        row.deleted_at = None
        row.created_at = now
        row.updated_at = now
    await db.flush()
    return row


async def consume_reset_token(db: AsyncSession, token_id: uuid.UUID, now: datetime) -> bool:
    """Пометить токен использованным, если он всё ещё жив.

    Все четыре условия (есть, не истёк, не использован, не отозван)
    проверяются в самом UPDATE, поэтому токен нельзя применить дважды даже
    при гонке.
    """
    stmt = (
        update(PasswordResetToken)
        .where(
            PasswordResetToken.id == token_id,
            PasswordResetToken.used_at.is_(None),
            PasswordResetToken.deleted_at.is_(None),
            PasswordResetToken.expires_at > now,
        )
        .values(used_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(stmt)
    return res.rowcount == 1


async def revoke_reset_tokens_for_user(db: AsyncSession, user_id: uuid.UUID, now: datetime) -> int:
    stmt = (
        update(PasswordResetToken)
        .where(PasswordResetToken.user_id == user_id, PasswordResetToken.deleted_at.is_(None))
        .values(deleted_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(stmt)
    return res.rowcount


async def delete_dead_reset_tokens(db: AsyncSession, now: datetime) -> int:
    """Удалить использованные, отозванные и истёкшие reset-токены."""
    stmt = delete(PasswordResetToken).where(
        or_(
            PasswordResetToken.used_at.is_not(None),
            PasswordResetToken.deleted_at.is_not(None),
            PasswordResetToken.expires_at <= now,
        )
    )
    res = await db.execute(stmt.execution_options(synchronize_session=False))
    return res.rowcount


# --- tasks ----------------------------------------------------------------


async def add_task(db: AsyncSession, task: Task) -> Task:
    db.add(task)
    await db.flush()
    return task


async def get_task_for_owner(db: AsyncSession, owner_id: uuid.UUID, task_id: uuid.UUID) -> Optional[Task]:
    """Задача по id, только если она принадлежит owner_id.

    Чужая задача и несуществующая неотличимы: обе дают None.
    """
    q = await db.execute(select(Task).where(Task.id == task_id, Task.owner_id == owner_id))
    return q.scalars().first()


async def delete_task(db: AsyncSession, task: Task):
    await db.delete(task)
    await db.flush()


async def count_tasks(db: AsyncSession) -> int:
    q = await db.execute(select(func.count()).select_from(Task))
    return q.scalar() or 0


def _task_filters(owner_id: uuid.UUID, filters: TaskSearch) -> list:
    conds = [Task.owner_id == owner_id]
    if filters.q:
        conds.append(
            or_(
                Task.title.icontains(filters.q, autoescape=True),
                Task.description.icontains(filters.q, autoescape=True),
            )
        )
    if filters.status is not None:
        conds.append(Task.status == filters.status.value)
    if filters.created_from is not None:
        conds.append(Task.created_at >= filters.created_from)
    if filters.created_to is not None:
        conds.append(Task.created_at <= filters.created_to)
    if filters.completed_from is not None:
        conds.append(Task.completed_at >= filters.completed_from)
    if filters.completed_to is not None:
        conds.append(Task.completed_at <= filters.completed_to)
    return conds


async def search_tasks(
    db: AsyncSession, owner_id: uuid.UUID, filters: TaskSearch, page: int, limit: int
) -> Tuple[List[Task], int]:
    """Страница задач владельца и общее число совпадений.

    Порядок: created_at desc, затем id desc: последний ключ делает порядок
    полностью детерминированным. С incomplete_first незавершённые идут первыми.
    """
    conds = _task_filters(owner_id, filters)
    total_q = await db.execute(select(func.count()).select_from(Task).where(*conds))
    total = total_q.scalar() or 0

    order = [Task.created_at.desc(), Task.id.desc()]
    if filters.incomplete_first:
        order.insert(0, (Task.status == TASK_STATUS_COMPLETE).asc())
    q = await db.execute(
        select(Task).where(*conds).order_by(*order).offset((page - 1) * limit).limit(limit)
    )
    return list(q.scalars().all()), total


# --- audit log ------------------------------------------------------------


async def add_audit_log(
    db: AsyncSession,
    action: str,
    now: datetime,
    user_id: Optional[uuid.UUID] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AuditLog:
    """Append-only: обновления и удаления записей журнала не предусмотрены."""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=now,
    )
    db.add(entry)
    await db.flush()
    return entry
