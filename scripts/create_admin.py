"""Idempotent admin-creation script.

Запускайте вручную в project's venv. Скрипт не выполняется автоматически.
Пример использования:
    python scripts/create_admin.py

Скрипт проверяет, существует ли пользователь с данным email; если нет: создает
администратора с указанным паролем. Пароль хэшируется с помощью passlib/Argon2.
"""
import asyncio
import getpass
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from auth import hash_password  # noqa: E402
from config import Settings  # noqa: E402
from context import build_context  # noqa: E402
from models import User, ROLE_ADMIN, USER_STATUS_ACTIVE  # noqa: E402
import crud  # noqa: E402


async def ensure_admin(email: str, password: str) -> bool:
    """Создать администратора, если его ещё нет. True: если создан."""
    ctx = build_context(Settings.from_env())
    try:
        async with ctx.sessionmaker() as session:
            if await crud.get_user_by_email(session, email):
                print("Admin already exists (no change)")
                return False
            now = ctx.now()
            user = User(
                email=email,
                hashed_password=await hash_password(ctx, password),
                role=ROLE_ADMIN,
                status=USER_STATUS_ACTIVE,
                created_at=now,
                updated_at=now,
            )
            await crud.add_user(session, user)
            await session.commit()
            print("Admin created")
            return True
    finally:
        await ctx.engine.dispose()


if __name__ == "__main__":
    email = os.environ.get("ADMIN_EMAIL") or input("admin email: ")
    pw = os.environ.get("ADMIN_PASSWORD")
    if not pw:
        pw = getpass.getpass("admin password: ")
    asyncio.run(ensure_admin(email, pw))
