from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authkernel.config import Settings
from authkernel.logging import get_logger

logger = get_logger(__name__)

_BASE_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


def _describe_ttl(minutes: int) -> str:
    if minutes % 1440 == 0:
        days = minutes // 1440
        return f"{days} day" + ("s" if days != 1 else "")
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" + ("s" if hours != 1 else "")
    return f"{minutes} minutes"


class EmailService:
    """Delivers recovery tokens to identities by email.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Password reset emails
    - Email verification emails
    - Fallback to logging when not configured (dev mode)

    Every send returns a bool; delivery failures are logged and never
    raised, so callers can keep their acknowledgement uniform.
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
        from_name: str = "authkernel",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 30,
        verification_ttl_hours: int = 24,
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
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours
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
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
            verification_ttl_hours=settings.email_verification_ttl_hours,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending. The body carries
            # the raw token, so only the subject is logged.
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
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
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                refused_count=len(getattr(e, "recipients", {}) or {}),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Connection refused, DNS failure, socket timeout
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _render(self, *, title: str, intro: str, action: str, url: str, expiry: str) -> tuple[str, str]:
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_BASE_STYLE}    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{action}</a>
        </p>
        <p>This link will expire in {expiry}.</p>
        <div class="footer">
            <p>{self.from_name}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = f"""{title}

{intro}

{url}

This link will expire in {expiry}.

---
{self.from_name}
"""
        return html_body, text_body

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/?reset_token={token}"
        html_body, text_body = self._render(
            title="Reset your password",
            intro=(
                "We received a request to reset your password. Use the link below to "
                "choose a new one. If you didn't request this, you can ignore this email."
            ),
            action="Reset Password",
            url=reset_url,
            expiry=_describe_ttl(self.reset_ttl_minutes),
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        """Send email verification link."""
        verify_url = f"{self.base_url}/?verify_token={token}"
        html_body, text_body = self._render(
            title="Verify your email",
            intro="Please confirm this address by following the link below.",
            action="Verify Email",
            url=verify_url,
            expiry=_describe_ttl(self.verification_ttl_hours * 60),
        )
        return self._send_email(to_email, "Verify your email", html_body, text_body)
