"""Доменные ошибки.

Наследуемся от HTTPException: сервисный слой бросает их напрямую, FastAPI
сам превращает их в ответ. Тексты намеренно общие: ответ не должен
различать «нет такого email» и «неверный пароль», «чужая задача» и
«задачи нет», а также причину невалидности reset-токена.
"""
from fastapi import HTTPException

INVALID_TOKEN_HEADER = 'Bearer error="invalid_token"'


class ConflictError(HTTPException):
    def __init__(self, detail: str = "User with this email already exists"):
        super().__init__(status_code=409, detail=detail)


class InvalidCredentialsError(HTTPException):
    def __init__(self):
        super().__init__(status_code=401, detail="Incorrect email or password")


class UnauthorizedError(HTTPException):
    def __init__(self, detail: str = "Not authenticated", description: str = None):
        header = INVALID_TOKEN_HEADER
        if description:
            header = f'{INVALID_TOKEN_HEADER}, error_description="{description}"'
        super().__init__(status_code=401, detail=detail, headers={"WWW-Authenticate": header})


class ForbiddenError(HTTPException):
    def __init__(self, detail: str = "Not enough permissions"):
        super().__init__(status_code=403, detail=detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=404, detail=detail)


class ValidationError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=422, detail=detail)


class InvalidResetTokenError(HTTPException):
    def __init__(self):
        super().__init__(status_code=400, detail="Invalid or expired reset token")
