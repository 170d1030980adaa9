from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import httpx

from edugate.config import Settings
from edugate.logging import get_logger, mask_email, mask_phone
from edugate.service.errors import UpstreamUnavailableError
from edugate.storage.models import MFAMethod

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>{title}</h1>
    {body}
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{product}</p>
  </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured (dev mode) messages are logged instead of sent.
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
        from_name: str = "EduGate",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout = timeout

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
            timeout=settings.dispatch_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message; False when the SMTP exchange fails."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", to=mask_email(to_email), host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def _render(self, title: str, paragraphs: list[str]) -> tuple[str, str]:
        html = _HTML_TEMPLATE.format(
            title=title,
            body="\n    ".join(f"<p>{p}</p>" for p in paragraphs),
            product=self.from_name,
        )
        text = "\n\n".join([title, *paragraphs, f"---\n{self.from_name}"])
        return html, text

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html, text = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one:",
                reset_url,
                "This link expires in 15 minutes. If you didn't request this, you can ignore this email.",
            ],
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html, text)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html, text = self._render(
            "Verify your email",
            [
                "Thanks for signing up! Please confirm your address using the link below:",
                verify_url,
                "This link expires in 24 hours.",
            ],
        )
        return self._send_email(to_email, f"Verify your {self.from_name} email", html, text)

    def send_mfa_code(self, to_email: str, code: str) -> bool:
        html, text = self._render(
            "Your verification code",
            [
                f"Your sign-in code is {code}.",
                "It expires in 15 minutes. If you didn't try to sign in, change your password.",
            ],
        )
        return self._send_email(to_email, f"{self.from_name} verification code", html, text)


class SmsGateway:
    """Posts one-time codes to an HTTP SMS gateway."""

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    async def send(self, phone: str, message: str) -> None:
        if not self.is_configured:
            logger.info("sms_dev_mode", phone=mask_phone(phone), body_preview=message[:40])
            return
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.url, json={"to": phone, "message": message}, headers=headers
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                phone=mask_phone(phone),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamUnavailableError() from exc
        logger.info("sms_sent", phone=mask_phone(phone))


class CodeDispatcher:
    """Delivers MFA one-time codes by email or SMS."""

    def __init__(self, email: EmailService, sms: SmsGateway) -> None:
        self.email = email
        self.sms = sms

    async def send_code(self, method: MFAMethod, destination: str, code: str) -> None:
        method = MFAMethod(method)
        if method == MFAMethod.EMAIL:
            # smtplib blocks; keep it off the event loop
            sent = await asyncio.to_thread(self.email.send_mfa_code, destination, code)
            if not sent:
                raise UpstreamUnavailableError()
        elif method == MFAMethod.SMS:
            await self.sms.send(destination, f"Your {self.email.from_name} verification code is {code}")
        else:
            raise ValueError(f"codes are not dispatched for {method.value}")


__all__ = ["EmailService", "SmsGateway", "CodeDispatcher"]
