"""Simple test-friendly email helper.

Usage in tests: call `mailer.last_sent_for(email)` to retrieve the last
password reset message and its raw token.
"""
from collections import deque
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


class OutboxMailer:
    """In-process outbox. Реальная доставка (SMTP/провайдер) подключается
    заменой этого объекта в AppContext."""

    def __init__(self, maxlen: int = 100):
        # dicts {to, subject, body, token, when, expires_at}; старые вытесняются
        self.sent = deque(maxlen=maxlen)

    def send_password_reset(self, to_email: str, token: str, expires_at: datetime, now: datetime):
        msg = {
            "to": to_email,
            "subject": "Reset your password",
            "body": f"Use this token to reset your password: {token}",
            "token": token,
            "when": now,
            "expires_at": expires_at,
        }
        self.sent.append(msg)
        logger.info("Sent password reset email", extra={"to": to_email})

    def last_sent_for(self, email: str):
        for msg in reversed(self.sent):
            if msg["to"] == email:
                return msg
        return None
