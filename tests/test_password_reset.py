import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from clock import utcnow
from conftest import PASSWORD, bearer, unique_email, user_id
from db import build_engine, build_sessionmaker
from emailer import OutboxMailer
from models import AuditLog, PasswordResetToken, Session, User, USER_STATUS_INACTIVE
import services

NEW_PASSWORD = "n3w-passw0rd"


def _request_token(client, ctx, email):
    resp = client.post("/auth/password-reset", json={"email": email})
    assert resp.status_code == 200
    sent = ctx.mailer.last_sent_for(email)
    assert sent is not None
    return sent["token"]


def _valid(client, token) -> bool:
    resp = client.post("/auth/password-reset/validate", json={"token": token})
    assert resp.status_code == 200
    return resp.json()["valid"]


def test_request_is_indistinguishable_for_unknown_email(client, register, ctx):
    email, _ = register()
    known = client.post("/auth/password-reset", json={"email": email})
    missing_email = unique_email("ghost")
    unknown = client.post("/auth/password-reset", json={"email": missing_email})

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json() == {"success": True}
    assert ctx.mailer.last_sent_for(email) is not None
    assert ctx.mailer.last_sent_for(missing_email) is None


def test_fresh_token_is_valid(client, register, ctx):
    email, _ = register()
    token = _request_token(client, ctx, email)
    assert _valid(client, token) is True


def test_never_issued_token_is_invalid(client):
    assert _valid(client, "never-issued-token") is False


def test_expired_token_is_invalid(client, register, ctx, store):
    email, body = register()
    token = _request_token(client, ctx, email)
    store.run(
        update(PasswordResetToken)
        .where(PasswordResetToken.user_id == user_id(body))
        .values(expires_at=utcnow() - timedelta(seconds=1))
    )
    assert _valid(client, token) is False
    resp = client.post("/auth/password-reset/complete", json={"token": token, "new_password": NEW_PASSWORD})
    assert resp.status_code == 400


def test_complete_resets_password_and_invalidates_sessions(client, register, ctx, store):
    email, body = register()
    login = client.post("/auth/login", json={"email": email, "password": PASSWORD}).json()
    token = _request_token(client, ctx, email)

    resp = client.post("/auth/password-reset/complete", json={"token": token, "new_password": NEW_PASSWORD})
    assert resp.status_code == 200
    assert resp.json() == {"success": True}

    # every pre-reset refresh token is dead
    for raw in (body["token"]["refresh"], login["token"]["refresh"]):
        assert client.post("/auth/refresh", json={"refresh_token": raw}).status_code == 401
    assert store.scalars(select(Session).where(Session.user_id == user_id(body))) == []

    assert client.post("/auth/login", json={"email": email, "password": PASSWORD}).status_code == 401
    assert client.post("/auth/login", json={"email": email, "password": NEW_PASSWORD}).status_code == 200

    row = store.scalar(select(PasswordResetToken).where(PasswordResetToken.user_id == user_id(body)))
    assert row.used_at is not None
    actions = [a.action for a in store.scalars(select(AuditLog).where(AuditLog.user_id == user_id(body)))]
    assert "password_reset_requested" in actions
    assert "password_reset" in actions


def test_used_token_cannot_be_replayed(client, register, ctx):
    email, _ = register()
    token = _request_token(client, ctx, email)
    first = client.post("/auth/password-reset/complete", json={"token": token, "new_password": NEW_PASSWORD})
    assert first.status_code == 200

    assert _valid(client, token) is False
    replay = client.post("/auth/password-reset/complete", json={"token": token, "new_password": "yet-another-pw"})
    assert replay.status_code == 400
    assert client.post("/auth/login", json={"email": email, "password": NEW_PASSWORD}).status_code == 200


def test_new_request_replaces_previous_token(client, register, ctx, store):
    email, body = register()
    old = _request_token(client, ctx, email)
    new = _request_token(client, ctx, email)
    assert old != new
    assert _valid(client, old) is False
    assert _valid(client, new) is True
    rows = store.scalars(select(PasswordResetToken).where(PasswordResetToken.user_id == user_id(body)))
    assert len(rows) == 1


def test_revoked_token_is_invalid(client, register, ctx, store):
    email, body = register()
    token = _request_token(client, ctx, email)
    store.run(
        update(PasswordResetToken)
        .where(PasswordResetToken.user_id == user_id(body))
        .values(deleted_at=utcnow())
    )
    assert _valid(client, token) is False


def test_failures_share_one_generic_error(client, register, ctx, store):
    email, body = register()
    token = _request_token(client, ctx, email)
    store.run(update(User).where(User.id == user_id(body)).values(status=USER_STATUS_INACTIVE))

    inactive_owner = client.post("/auth/password-reset/complete", json={"token": token, "new_password": NEW_PASSWORD})
    unknown = client.post("/auth/password-reset/complete", json={"token": "nope", "new_password": NEW_PASSWORD})
    assert inactive_owner.status_code == unknown.status_code == 400
    assert inactive_owner.json() == unknown.json()


def test_inactive_account_gets_no_reset_mail(client, register, ctx, store):
    email, body = register()
    store.run(update(User).where(User.id == user_id(body)).values(status=USER_STATUS_INACTIVE))
    resp = client.post("/auth/password-reset", json={"email": email})
    assert resp.json() == {"success": True}
    assert ctx.mailer.last_sent_for(email) is None


def test_complete_rejects_short_password(client, register, ctx):
    email, _ = register()
    token = _request_token(client, ctx, email)
    resp = client.post("/auth/password-reset/complete", json={"token": token, "new_password": "short"})
    assert resp.status_code == 422
    assert _valid(client, token) is True


def test_expiry_uses_one_utc_clock(client, register, ctx, monkeypatch):
    # Часы отдают время в другой зоне: срок должен считаться по тому же моменту
    seoul = timezone(timedelta(hours=9))
    monkeypatch.setattr(ctx, "clock", lambda: datetime.now(seoul))
    email, _ = register()
    token = _request_token(client, ctx, email)
    sent = ctx.mailer.last_sent_for(email)
    assert sent["expires_at"].utcoffset() == timedelta(0)
    assert _valid(client, token) is True

    ttl = timedelta(minutes=ctx.settings.password_reset_expire_minutes)
    # just before expiry: still valid
    monkeypatch.setattr(ctx, "clock", lambda: (sent["when"] + ttl - timedelta(seconds=1)).astimezone(seoul))
    assert _valid(client, token) is True
    # exactly at expiry: expired (expires_at <= now)
    monkeypatch.setattr(ctx, "clock", lambda: (sent["when"] + ttl).astimezone(seoul))
    assert _valid(client, token) is False


def test_reset_flow_requires_no_bearer(client, register, ctx):
    email, body = register()
    token = _request_token(client, ctx, email)
    resp = client.post(
        "/auth/password-reset/complete",
        json={"token": token, "new_password": NEW_PASSWORD},
        headers=bearer(body),
    )
    assert resp.status_code == 200


def test_concurrent_requests_for_same_user_both_succeed(client, register, ctx, store):
    email, body = register()

    async def scenario():
        engine = build_engine(ctx.settings.database_url)
        maker = build_sessionmaker(engine)
        try:
            now = utcnow()
            async with maker() as holder, maker() as db:
                # первый запрос вставил строку, но ещё не закоммитил
                holder.add(
                    PasswordResetToken(
                        user_id=user_id(body),
                        token_hash=ctx.issuer.hash_token("first-request"),
                        expires_at=now + timedelta(minutes=15),
                        created_at=now,
                        updated_at=now,
                    )
                )
                await holder.flush()

                async def commit_later():
                    await asyncio.sleep(0.3)
                    await holder.commit()

                pending = asyncio.create_task(commit_later())
                result = await services.request_password_reset(ctx, db, email)
                await pending
                return result
        finally:
            await engine.dispose()

    result = asyncio.run(scenario())
    assert result.success is True

    token = ctx.mailer.last_sent_for(email)["token"]
    rows = store.scalars(select(PasswordResetToken).where(PasswordResetToken.user_id == user_id(body)))
    assert len(rows) == 1
    assert rows[0].token_hash == ctx.issuer.hash_token(token)
    assert _valid(client, token) is True
    assert _valid(client, "first-request") is False


def test_outbox_keeps_only_recent_messages():
    mailer = OutboxMailer(maxlen=2)
    now = utcnow()
    for n in range(3):
        mailer.send_password_reset(f"u{n}@example.com", f"token-{n}", now + timedelta(minutes=15), now)
    assert len(mailer.sent) == 2
    assert mailer.last_sent_for("u0@example.com") is None
    assert mailer.last_sent_for("u2@example.com")["token"] == "token-2"
