from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from html import escape
from typing import Optional, Protocol

import httpx

from idbadge.config import Settings
from idbadge.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailSender(Protocol):
    async def send(self, to_email: str, subject: str, html_body: str) -> None: ...


class SmsSender(Protocol):
    async def send(self, to: str, body: str) -> None: ...


class SmtpEmailSender:
    """Delivers notification email over SMTP, or logs it when no relay is configured.

    ``smtplib`` blocks, so :meth:`send` runs the delivery in a worker thread.
    Delivery failures are logged, never raised.
    """

    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.username = settings.smtp_user
        self.password = settings.smtp_password
        self.starttls = settings.smtp_use_tls
        self.sender = formataddr((settings.email_from_name, settings.email_from_address or settings.smtp_user or ""))
        self.envelope_from = settings.email_from_address or settings.smtp_user

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.envelope_from)

    async def send(self, to_email: str, subject: str, html_body: str) -> None:
        if not self.is_configured:
            logger.info("email_not_sent_no_relay", to=redact_email(to_email), subject=subject)
            return
        await asyncio.to_thread(self._deliver, to_email, subject, html_body)

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if not self.starttls:
            return smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=30)
        server = smtplib.SMTP(self.host, self.port, timeout=30)
        server.starttls(context=context)
        return server

    def _deliver(self, to_email: str, subject: str, html_body: str) -> None:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = to_email
        message.attach(MIMEText(html_body, "html"))
        try:
            with self._connect() as server:
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.envelope_from, [to_email], message.as_string())
        except smtplib.SMTPRecipientsRefused:
            logger.warning("email_recipient_refused", to=redact_email(to_email), subject=subject)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                to=redact_email(to_email),
                subject=subject,
                host=self.host,
                error_type=type(exc).__name__,
            )
        else:
            logger.info("email_sent", to=redact_email(to_email), subject=subject)


class LoggingSmsSender:
    """Dev-mode SMS sender."""

    async def send(self, to: str, body: str) -> None:
        logger.info("sms_dev_mode", phone=to, length=len(body))


class HttpSmsSender:
    """Posts ``{"to", "body"}`` to an SMS gateway endpoint."""

    def __init__(self, gateway_url: str, *, token: Optional[str] = None, timeout: float = 10.0) -> None:
        self.gateway_url = gateway_url
        self.token = token
        self.timeout = timeout

    async def send(self, to: str, body: str) -> None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(self.gateway_url, json={"to": to, "body": body}, headers=headers)
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                logger.error("sms_send_failed", phone=to, error_type=type(exc).__name__, error=str(exc))
                return
        logger.info("sms_sent", phone=to)


_PAGE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #10a37f; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
{paragraphs}
{button}
        <div class="footer">
            <p>{product}</p>
{footer_link}
        </div>
    </div>
</body>
</html>
"""


class Notifier:
    """Composes the transactional emails and SMS messages of the auth flows."""

    def __init__(
        self,
        email: EmailSender,
        sms: SmsSender,
        *,
        base_url: str,
        product_name: str = "idbadge",
    ) -> None:
        self.email = email
        self.sms = sms
        self.base_url = base_url.rstrip("/")
        self.product_name = product_name

    def _render(self, title: str, paragraphs: list[str], link: Optional[tuple[str, str]] = None) -> str:
        body = "\n".join(f"        <p>{escape(p)}</p>" for p in paragraphs)
        button = ""
        footer_link = ""
        if link:
            label, url = link
            button = f'        <p style="margin: 30px 0;"><a href="{escape(url)}" class="button">{escape(label)}</a></p>'
            footer_link = f"            <p>If the button doesn't work, copy and paste this URL: {escape(url)}</p>"
        return _PAGE.format(
            title=escape(title),
            paragraphs=body,
            button=button,
            product=escape(self.product_name),
            footer_link=footer_link,
        )

    async def send_email_verification(self, to_email: str, token: str) -> None:
        url = f"{self.base_url}/v2/user/register/verifyEmail?token={token}"
        html = self._render(
            "Verify your email",
            ["Thanks for signing up! Please verify your email address by clicking the button below.",
             "This link will expire in 24 hours."],
            ("Verify Email", url),
        )
        await self.email.send(to_email, f"Verify your {self.product_name} email", html)

    async def send_already_registered(self, to_email: str) -> None:
        url = f"{self.base_url}/app/#/forgotPassword"
        html = self._render(
            "You already have an account",
            ["Someone tried to sign up with this email address, but it is already registered.",
             "If you forgot your password you can reset it below. If this wasn't you, you can ignore this email."],
            ("Reset Password", url),
        )
        await self.email.send(to_email, f"Your {self.product_name} account", html)

    async def send_password_reset(self, to_email: str, token: str) -> None:
        url = f"{self.base_url}/app/#/resetPassword?token={token}"
        html = self._render(
            "Reset your password",
            ["We received a request to reset your password. Click the button below to choose a new password.",
             "If you didn't request this, you can safely ignore this email."],
            ("Reset Password", url),
        )
        await self.email.send(to_email, f"Reset your {self.product_name} password", html)

    async def send_lockout(self, to_email: str, minutes: int) -> None:
        html = self._render(
            "Your account has been locked",
            [f"There were too many failed attempts to log in to your account. Logins are disabled for {minutes} minutes.",
             "If this wasn't you, we recommend resetting your password once the lockout ends."],
        )
        await self.email.send(to_email, f"{self.product_name} account locked", html)

    async def send_invitation(self, to_email: str, account_name: str, token: str, *, days: int = 5) -> None:
        url = f"{self.base_url}/v2/user/register/acceptInvitation?token={token}"
        html = self._render(
            "You've been invited",
            [f"You have been invited to join the account {account_name}.",
             f"This invitation will expire in {days} days."],
            ("Accept Invitation", url),
        )
        await self.email.send(to_email, f"Invitation to {account_name} on {self.product_name}", html)

    async def send_sms_code(self, phone: str, code: str) -> None:
        await self.sms.send(phone, f"Your {self.product_name} verification code is {code}")
