from __future__ import annotations

import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from authsession.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Password reset emails
    - Two-factor enrollment notices
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "AuthSession",
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
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an address for logs."""
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
            # Dev mode: the body carries a live reset link, so only the subject is logged
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Connection refused, DNS failure, timeout
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(
        self, to_email: str, name: str, reset_link: str, *, ttl_minutes: int = 15
    ) -> bool:
        """Send the reset link; ``reset_link`` already carries the raw token."""
        subject = f"Reset your password - {self.from_name}"
        greeting = escape(name.strip()) if name and name.strip() else "there"
        safe_link = escape(reset_link, quote=True)
        year = datetime.now(timezone.utc).year

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .button {{ display: inline-block; background: #1a73e8; color: #fff; padding: 10px 20px; border-radius: 4px; text-decoration: none; }}
        .footer {{ margin-top: 30px; font-size: 12px; color: #aaa; }}
    </style>
</head>
<body>
    <div class="container">
        <h2>{escape(self.from_name)}</h2>
        <p>Hi {greeting},</p>
        <p>We received a request to reset your password. Click the button below to proceed:</p>
        <p style="margin: 20px 0;">
            <a href="{safe_link}" class="button">Reset Password</a>
        </p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p>This link will expire in {ttl_minutes} minutes.</p>
        <div class="footer">
            <p>&copy; {year} {escape(self.from_name)}</p>
            <p>If the button doesn't work, copy and paste this URL: {safe_link}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Hi {name.strip() if name and name.strip() else "there"},

We received a request to reset your password. Visit the link below to choose a new one:

{reset_link}

This link will expire in {ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""

        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> bool:
        """Notify the account owner that 2FA was switched on."""
        subject = "Two-factor authentication enabled"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
</head>
<body style="font-family: Arial, sans-serif; color: #333;">
    <h2>Two-factor authentication enabled</h2>
    <p>Two-factor authentication is now on for your {escape(self.from_name)} account.</p>
    <p>You will need a code from your authenticator app when signing in with a password.</p>
    <p>If you didn't make this change, reset your password immediately.</p>
</body>
</html>
"""

        text_body = f"""Two-factor authentication enabled

Two-factor authentication is now on for your {self.from_name} account.

You will need a code from your authenticator app when signing in with a password.

If you didn't make this change, reset your password immediately.
"""

        return self._send_email(to_email, subject, html_body, text_body)
