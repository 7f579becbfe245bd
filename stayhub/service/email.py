from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from html import escape
from typing import Any, Mapping, Optional

from stayhub.logging import get_logger, redact_email
from stayhub.service.errors import EmailDeliveryError

logger = get_logger(__name__)


class EmailKind(str, Enum):
    TEST = "TEST"
    WELCOME = "WELCOME"
    REGISTRATION = "REGISTRATION"
    VERIFICATION = "VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"


@dataclass
class RenderedEmail:
    subject: str
    text_body: str
    html_body: str


_HTML_SHELL = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{greeting}</p>
        <p>{intro}</p>
{action}
        <p>{outro}</p>
        <div class="footer">
            <p>StayHub</p>
{fallback}
        </div>
    </div>
</body>
</html>
"""


def _html(
    heading: str,
    greeting: str,
    intro: str,
    outro: str,
    *,
    link: Optional[str] = None,
    label: str = "",
) -> str:
    action = fallback = ""
    if link:
        safe_link = escape(link, quote=True)
        action = (
            f'        <p style="margin: 30px 0;">\n'
            f'            <a href="{safe_link}" class="button">{escape(label)}</a>\n'
            f"        </p>"
        )
        fallback = (
            f"            <p>If the button doesn't work, copy and paste this URL: {safe_link}</p>"
        )
    return _HTML_SHELL.format(
        heading=escape(heading),
        greeting=escape(greeting),
        intro=escape(intro),
        outro=escape(outro),
        action=action,
        fallback=fallback,
    )


def _text(heading: str, greeting: str, intro: str, outro: str, link: Optional[str]) -> str:
    parts = [heading, "", greeting, "", intro, ""]
    if link:
        parts += [link, ""]
    parts += [outro, "", "---", "StayHub", ""]
    return "\n".join(parts)


def render_email(kind: EmailKind, data: Mapping[str, Any]) -> RenderedEmail:
    """Build subject and bodies for a templated email kind."""
    name = str(data.get("name") or "there")
    greeting = f"Hi {name},"
    if kind == EmailKind.TEST:
        subject, heading = "StayHub test email", "Test email"
        intro = str(data.get("message") or "This is a test message from StayHub.")
        outro, link, label = "No action is required.", None, ""
    elif kind == EmailKind.WELCOME:
        subject, heading = "Welcome to StayHub", "Welcome to StayHub"
        intro = "Your account is ready. Start browsing rooms that match your preferences."
        outro, link, label = "Happy house hunting!", data.get("loginLink"), "Open StayHub"
    elif kind == EmailKind.REGISTRATION:
        subject, heading = "Confirm your StayHub registration", "Thanks for signing up"
        intro = "Please confirm your email address to finish setting up your account:"
        outro = "This link will expire in 1 hour."
        link, label = data.get("verificationLink"), "Verify Email"
    elif kind == EmailKind.VERIFICATION:
        subject, heading = "Verify your StayHub email", "Verify your email"
        intro = "Click the button below to verify your email address:"
        outro = "This link will expire in 1 hour."
        link, label = data.get("verificationLink"), "Verify Email"
    elif kind == EmailKind.PASSWORD_RESET:
        subject, heading = "Reset your StayHub password", "Reset your password"
        intro = "We received a request to reset your password. Choose a new one here:"
        outro = (
            "This link will expire in 1 hour. "
            "If you didn't request this, you can safely ignore this email."
        )
        link, label = data.get("resetLink"), "Reset Password"
    else:
        raise ValueError(f"unknown email kind: {kind}")
    link = str(link) if link else None
    return RenderedEmail(
        subject=subject,
        text_body=_text(heading, greeting, intro, outro, link),
        html_body=_html(heading, greeting, intro, outro, link=link, label=label),
    )


class EmailService:
    """Transactional email over SMTP.

    When SMTP is not configured the message is logged instead of sent, which
    keeps local development and tests free of a mail relay. Delivery
    failures raise ``EmailDeliveryError``; callers decide whether to surface it.
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
        from_name: str = "StayHub",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    async def send_templated(
        self, to: str, kind: EmailKind, data: Mapping[str, Any]
    ) -> None:
        rendered = render_email(EmailKind(kind), data)
        await asyncio.to_thread(
            self._send_email, to, rendered.subject, rendered.html_body, rendered.text_body
        )

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        """Send an email via SMTP, raising ``EmailDeliveryError`` on failure."""
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_email(to_email),
            )

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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            raise EmailDeliveryError("Email authentication failed") from e
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise EmailDeliveryError("Could not connect to mail server") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            raise EmailDeliveryError("Recipient refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("Email could not be sent") from e
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise EmailDeliveryError("Email could not be sent") from e
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_network_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("Email could not be sent") from e
