from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from migente_auth.logging import get_logger

logger = get_logger(__name__)

_HTML_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1769aa; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {content}
        <div class="footer">
            <p>{sender}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for account activation and password recovery.

    Falls back to logging when SMTP is not configured (dev and test mode).
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
        from_name: str = "MiGente",
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

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
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
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_activation(self, to_email: str, user_id: str, token: str) -> bool:
        """Send the account activation link issued at registration or on resend."""
        query = urlencode({"userId": user_id, "email": to_email, "token": token})
        activate_url = f"{self.base_url}/activate?{query}"
        subject = f"Activate your {self.from_name} account"
        html_body = _HTML_LAYOUT.format(
            title="Activate your account",
            content=(
                "<p>Thanks for registering. Confirm your email address to start using your account:</p>"
                f'<p style="margin: 30px 0;"><a href="{activate_url}" class="button">Activate account</a></p>'
                f"<p>If the button doesn't work, copy and paste this URL: {activate_url}</p>"
            ),
            sender=self.from_name,
        )
        text_body = (
            f"Activate your {self.from_name} account\n\n"
            f"Confirm your email address by visiting:\n\n{activate_url}\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        """Send the short numeric code used by reset-password."""
        subject = f"Your {self.from_name} password reset code"
        html_body = _HTML_LAYOUT.format(
            title="Reset your password",
            content=(
                "<p>Use this code to choose a new password:</p>"
                f'<p class="code">{code}</p>'
                f"<p>The code expires in {ttl_minutes} minutes and works once.</p>"
                "<p>If you didn't request this, you can safely ignore this email.</p>"
            ),
            sender=self.from_name,
        )
        text_body = (
            f"Your password reset code is {code}\n\n"
            f"It expires in {ttl_minutes} minutes and works once.\n"
            "If you didn't request this, you can safely ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        """Notify the account owner that their password was changed."""
        subject = f"Your {self.from_name} password was changed"
        html_body = _HTML_LAYOUT.format(
            title="Password changed",
            content=(
                "<p>The password on your account was just changed and other sessions were signed out.</p>"
                "<p>If you didn't make this change, reset your password immediately.</p>"
            ),
            sender=self.from_name,
        )
        text_body = (
            "The password on your account was just changed and other sessions were signed out.\n"
            "If you didn't make this change, reset your password immediately.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
