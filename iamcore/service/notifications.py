from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional, Set

from iamcore.config import Settings
from iamcore.logging import get_logger, redact_contact
from iamcore.storage.models import Account

logger = get_logger(__name__)


class EmailService:
    """Transactional email over SMTP.

    Without an SMTP host the message is only logged (subject and redacted
    recipient, never the body, which may carry codes or reset links).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "IAMCore",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(self, heading: str, paragraphs: list[str]) -> tuple[str, str]:
        body_html = "\n".join(f"        <p>{html.escape(p)}</p>" for p in paragraphs)
        html_body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{html.escape(heading)}</h1>
{body_html}
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{html.escape(self.from_name)}</p>
    </div>
</body>
</html>
"""
        text_body = "\n\n".join([heading, *paragraphs, f"---\n{self.from_name}"]) + "\n"
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_contact(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                smtp_status=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_contact(to_email))
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=redact_contact(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_transport_error",
                to=redact_contact(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=redact_contact(to_email), subject=subject)
        return True

    def send_welcome(self, to_email: str, name: str) -> bool:
        html_body, text_body = self._render(
            f"Welcome, {name}",
            [
                "Your account has been created.",
                f"You can sign in at {self.base_url}.",
            ],
        )
        return self._send_email(to_email, f"Welcome to {self.from_name}", html_body, text_body)

    def send_login_alert(
        self, to_email: str, device_name: Optional[str], ip_addr: Optional[str]
    ) -> bool:
        html_body, text_body = self._render(
            "New sign-in to your account",
            [
                f"We noticed a sign-in from {device_name or 'an unrecognized device'}"
                f" ({ip_addr or 'unknown address'}).",
                "If this was not you, reset your password and review your devices.",
            ],
        )
        return self._send_email(to_email, "New sign-in detected", html_body, text_body)

    def send_mfa_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        html_body, text_body = self._render(
            "Your verification code",
            [f"Your code is {code}.", f"It expires in {ttl_minutes} minutes."],
        )
        return self._send_email(to_email, "Your verification code", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one:",
                reset_url,
                f"This link expires in {ttl_minutes} minutes.",
                "If you did not request this, you can ignore this email.",
            ],
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password for your account was just changed and other sessions were signed out.",
                "If you did not make this change, contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)


class SmsService:
    """SMS delivery; no gateway is wired, so messages are only logged."""

    def send_code(self, phone: str, code: str, ttl_minutes: int) -> bool:
        logger.info("sms_dev_mode", to=redact_contact(phone), ttl_minutes=ttl_minutes)
        return True


class Notifier:
    """Fire-and-forget dispatch of account notifications.

    Each message is sent on a worker thread. Failures are logged and
    never reach the authentication flow that triggered them.
    """

    def __init__(
        self,
        email: EmailService,
        sms: Optional[SmsService] = None,
        *,
        code_ttl_minutes: int = 10,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.email = email
        self.sms = sms or SmsService()
        self.code_ttl_minutes = code_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Notifier":
        return cls(
            EmailService.from_settings(settings),
            SmsService(),
            code_ttl_minutes=settings.mfa_code_ttl_minutes,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )

    def _run(self, kind: str, send: Callable[..., bool], *args) -> None:
        try:
            delivered = send(*args)
        except Exception as exc:
            logger.error(
                "notification_failed", kind=kind, error_type=type(exc).__name__, error=str(exc)
            )
            return
        if not delivered:
            logger.warning("notification_not_delivered", kind=kind)

    def _dispatch(self, kind: str, send: Callable[..., bool], *args) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._run(kind, send, *args)
            return
        task = loop.create_task(asyncio.to_thread(self._run, kind, send, *args))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every notification dispatched so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def welcome(self, account: Account) -> None:
        self._dispatch("welcome", self.email.send_welcome, account.email, account.name)

    def login_alert(self, account: Account, device_name: Optional[str], ip_addr: Optional[str]) -> None:
        self._dispatch(
            "login_alert", self.email.send_login_alert, account.email, device_name, ip_addr
        )

    def mfa_code(self, account: Account, channel: str, destination: str, code: str) -> None:
        if channel == "sms":
            self._dispatch("mfa_sms", self.sms.send_code, destination, code, self.code_ttl_minutes)
        else:
            self._dispatch(
                "mfa_email", self.email.send_mfa_code, destination, code, self.code_ttl_minutes
            )

    def password_reset(self, account: Account, token: str) -> None:
        self._dispatch(
            "password_reset",
            self.email.send_password_reset,
            account.email,
            token,
            self.reset_ttl_minutes,
        )

    def password_changed(self, account: Account) -> None:
        self._dispatch("password_changed", self.email.send_password_changed, account.email)
