# app/services/mailer.py
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from app.core.config import settings

logger = logging.getLogger(__name__)

OTP_SUBJECT = "Waste2worth : Your OTP for Waste Collection Confirmation"


def otp_body(otp: str) -> str:
    return f"Your OTP is: {otp}. Please use this code to confirm your action."


class SmtpMailBackend:
    def __init__(self, host: str, port: int, username: str, password: str):
        self.host = host
        self.port = port
        self.username = username
        self.password = password

    def _send(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=20) as smtp:
            smtp.starttls()
            smtp.login(self.username, self.password)
            smtp.send_message(msg)

    async def send(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.username
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        await asyncio.to_thread(self._send, msg)


class LoggingMailBackend:
    """Used when SMTP is not configured: the mail only goes to the log."""

    def __init__(self):
        self.outbox = []

    async def send(self, to: str, subject: str, body: str) -> None:
        self.outbox.append((to, subject, body))
        logger.info("Mail to %s | %s", to, subject)


_mail_backend: Optional[object] = None


def get_mail_backend():
    global _mail_backend
    if _mail_backend is None:
        if settings.SMTP_EMAIL and settings.SMTP_PASSWORD:
            _mail_backend = SmtpMailBackend(
                settings.SMTP_HOST, settings.SMTP_PORT, settings.SMTP_EMAIL, settings.SMTP_PASSWORD
            )
        else:
            logger.info("SMTP credentials not set; OTP mails are only logged")
            _mail_backend = LoggingMailBackend()
    return _mail_backend
