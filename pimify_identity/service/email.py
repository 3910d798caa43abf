from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from pimify_identity.logging import get_logger, redact_email
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
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
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{product}</p>
            {footer}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional e-mail over SMTP (STARTTLS or implicit TLS).

    When no SMTP host is configured the message is logged instead of sent so
    local development and tests work without a mail server.
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
        from_name: str = "Pimify",
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
    def from_settings(cls, settings) -> "EmailService":
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

    def send(
        self, to: str, subject: str, body_html: str, text_body: Optional[str] = None
    ) -> Result:
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to), subject=subject)
            return Result.ok({"delivered": False, "dev_mode": True})

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(body_html, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed", to=redact_email(to), host=self.smtp_host, error_code=exc.smtp_code
            )
            return Result.fail(ErrorKind.INTERNAL_ERROR, "email delivery failed")
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=redact_email(to), refused=len(exc.recipients))
            return Result.fail(ErrorKind.INTERNAL_ERROR, "email delivery failed")
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=redact_email(to),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Result.fail(ErrorKind.INTERNAL_ERROR, "email delivery failed")
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_connect_failed",
                to=redact_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Result.fail(ErrorKind.INTERNAL_ERROR, "email delivery failed")

        logger.info("email_sent", to=redact_email(to), subject=subject)
        return Result.ok({"delivered": True})

    def _render(self, title: str, body: str, footer: str = "") -> str:
        return _LAYOUT.format(title=title, body=body, product=escape(self.from_name), footer=footer)

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 60) -> Result:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body = self._render(
            "Reset your password",
            f"""<p>We received a request to reset your password. Choose a new one here:</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
        <p>This link expires in {ttl_minutes} minutes and can be used once.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>""",
            f"<p>If the button doesn't work, copy and paste this URL: {reset_url}</p>",
        )
        text_body = (
            "Reset your Pimify password\n\n"
            f"Visit the link below to choose a new password:\n\n{reset_url}\n\n"
            f"This link expires in {ttl_minutes} minutes and can be used once.\n"
        )
        return self.send(to_email, "Reset your Pimify password", html_body, text_body)

    def send_invitation(
        self, to_email: str, token: str, *, role: str, inviter: Optional[str] = None, ttl_days: int = 7
    ) -> Result:
        accept_url = f"{self.base_url}/accept-invitation?token={token}"
        who = escape(inviter) if inviter else "An administrator"
        html_body = self._render(
            "You're invited to Pimify",
            f"""<p>{who} invited you to join Pimify as <strong>{escape(role.title())}</strong>.</p>
        <p style="margin: 30px 0;"><a href="{accept_url}" class="button">Accept Invitation</a></p>
        <p>This invitation expires in {ttl_days} days.</p>""",
            f"<p>If the button doesn't work, copy and paste this URL: {accept_url}</p>",
        )
        text_body = (
            f"You're invited to Pimify as {role.title()}.\n\n"
            f"Accept the invitation here:\n\n{accept_url}\n\n"
            f"This invitation expires in {ttl_days} days.\n"
        )
        return self.send(to_email, "You're invited to Pimify", html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> Result:
        html_body = self._render(
            "Two-factor authentication enabled",
            """<p>Two-factor authentication is now enabled on your account.</p>
        <p>If you didn't make this change, contact your administrator immediately.</p>""",
        )
        return self.send(to_email, "Two-factor authentication enabled", html_body)


__all__ = ["EmailService"]
