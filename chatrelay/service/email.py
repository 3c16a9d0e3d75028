from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from chatrelay.config import Settings
from chatrelay.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
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
        <p>{intro}</p>
        <p style="margin: 30px 0;"><a href="{link}" class="button">{action}</a></p>
        <p>{expiry}</p>
        <div class="footer">
            <p>{product}</p>
            <p>If the button doesn't work, copy and paste this URL: {link}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{link}

{expiry}

---
{product}
"""


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured the message is logged instead of sent,
    which keeps password reset and verification usable in development.
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
        from_name: str = "ChatRelay",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

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

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message; returns False (after logging) on SMTP failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
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
                error_code=getattr(e, "smtp_code", None),
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

    def _render(self, *, heading: str, intro: str, link: str, action: str, expiry: str) -> tuple[str, str]:
        fields = dict(
            heading=heading, intro=intro, link=link, action=action, expiry=expiry,
            product=self.from_name,
        )
        return _HTML_TEMPLATE.format(**fields), _TEXT_TEMPLATE.format(**fields)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._render(
            heading="Reset your password",
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            link=f"{self.base_url}/?reset_token={token}",
            action="Reset Password",
            expiry="This link will expire in 15 minutes. If you didn't request this, you can ignore this email.",
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._render(
            heading="Verify your email",
            intro="Thanks for signing up! Please confirm your email address using the link below.",
            link=f"{self.base_url}/?verify_token={token}",
            action="Verify Email",
            expiry="This link will expire in 24 hours.",
        )
        return self._send_email(to_email, f"Verify your {self.from_name} email", html_body, text_body)
