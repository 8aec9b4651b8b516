"""
Transactional email over SMTP (verification, password reset, welcome).

Sending never raises: every public method returns True/False and logs failures, so callers
treat email as best-effort. Without SMTP_HOST the message is logged instead of sent (dev mode).
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from functools import lru_cache
from html import escape

from ums.config import settings

logger = logging.getLogger(__name__)


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    def __init__(
        self,
        *,
        smtp_host: str | None = None,
        smtp_port: int = 587,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        smtp_use_tls: bool = True,
        timeout: int = 30,
        from_email: str | None = None,
        from_name: str = "User Management System",
        base_url: str = "http://localhost:3000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.timeout = timeout
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

    async def send(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "Email (dev mode, not sent) to=%s subject=%r body=%r",
                redact_email(to_email),
                subject,
                text_body[:200],
            )
            return True
        try:
            # smtplib blocks; keep it off the event loop
            await asyncio.to_thread(self._deliver, to_email, subject, html_body, text_body)
        except smtplib.SMTPAuthenticationError as e:
            logger.error("Email auth failed host=%s user=%s: %s", self.smtp_host, self.smtp_user, e)
            return False
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Email send failed to=%s subject=%r: %s", redact_email(to_email), subject, e)
            return False
        logger.info("Email sent to=%s subject=%r", redact_email(to_email), subject)
        return True

    async def send_email_verification(self, to_email: str, name: str, token: str) -> bool:
        url = f"{self.base_url}/verify-email/{token}"
        text = (
            f"Hi {name},\n\nPlease verify your email address by opening this link:\n{url}\n\n"
            "This link will expire in 24 hours.\n"
            "If you didn't create an account with us, please ignore this email."
        )
        html = (
            f"<p>Hi {escape(name)},</p><p>Please verify your email address:</p>"
            f'<p><a href="{url}">Verify Email Address</a></p>'
            "<p>If you didn't create an account with us, please ignore this email.</p>"
        )
        return await self.send(to_email, "Verify Your Email Address", html, text)

    async def send_password_reset(self, to_email: str, name: str, token: str) -> bool:
        url = f"{self.base_url}/reset-password/{token}"
        text = (
            f"Hi {name},\n\nWe received a request to reset your password. Open this link to choose a new one:\n"
            f"{url}\n\nThis link will expire in 1 hour.\n"
            "If you didn't request a password reset, please ignore this email."
        )
        html = (
            f"<p>Hi {escape(name)},</p><p>We received a request to reset your password.</p>"
            f'<p><a href="{url}">Reset Password</a></p><p>This link will expire in 1 hour.</p>'
        )
        return await self.send(to_email, "Reset Your Password", html, text)

    async def send_welcome_email(self, to_email: str, name: str) -> bool:
        text = f"Hi {name},\n\nYour email address is verified. You can now log in to your account."
        html = f"<p>Hi {escape(name)},</p><p>Your email address is verified. You can now log in to your account.</p>"
        return await self.send(to_email, "Welcome!", html, text)


@lru_cache
def get_email_service() -> EmailService:
    return EmailService(
        smtp_host=settings.smtp_host or None,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user or None,
        smtp_password=settings.smtp_password or None,
        smtp_use_tls=settings.smtp_use_tls,
        timeout=settings.smtp_timeout_seconds,
        from_email=settings.email_from or None,
        from_name=settings.email_from_name,
        base_url=settings.frontend_url,
    )
