"""Единый источник времени.

Все метки времени (created_at, expires_at, completed_at) и все проверки
истечения берутся отсюда, чтобы создание и валидация токенов шли по одним
и тем же UTC-часам.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Привести значение из БД к timezone-aware UTC.

    SQLite (и старые строки в Postgres) возвращают naive datetime: считаем
    их UTC. Aware-значения в другой зоне конвертируются.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    """True, если срок истёк: expires_at <= now. Отсутствие срока = истёк."""
    expires_at = as_utc(expires_at)
    if expires_at is None:
        return True
    return expires_at <= as_utc(now)
