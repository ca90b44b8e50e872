from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from estate_auth.config import Settings
from estate_auth.logging import get_logger

logger = get_logger(__name__)


class NotificationService:
    """Transactional email for account and trial events.

    Falls back to logging the message when SMTP is not configured.
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
        from_name: str = "Estate Marketplace",
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
    def from_settings(cls, settings: Settings) -> "NotificationService":
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

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send a plain-text message with a minimal HTML alternative.

        Returns True if sent (or logged in dev mode), False on SMTP failure.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        paragraphs = "".join(f"<p>{html.escape(p)}</p>" for p in text_body.split("\n\n"))
        msg.attach(MIMEText(f"<html><body>{paragraphs}</body></html>", "html"))

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
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(exc),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        return self._send_email(
            to_email,
            "Reset your password",
            "We received a request to reset your password.\n\n"
            f"Open this link within one hour to choose a new one: {reset_url}\n\n"
            "If you did not ask for this you can ignore this message.",
        )

    def send_trial_started(self, to_email: str, name: str, trial_end: datetime, listings_limit: int) -> bool:
        return self._send_email(
            to_email,
            "Your agent trial has started",
            f"Hi {name or 'there'},\n\n"
            f"Your free agent trial is active until {trial_end:%Y-%m-%d %H:%M} UTC. "
            f"You can publish up to {listings_limit} listings during the trial.",
        )

    def send_trial_reminder(self, to_email: str, name: str, trial_end: datetime, days_left: int) -> bool:
        return self._send_email(
            to_email,
            f"Your agent trial ends in {days_left} day(s)",
            f"Hi {name or 'there'},\n\n"
            f"Your agent trial ends on {trial_end:%Y-%m-%d %H:%M} UTC. "
            f"Subscribe before then to keep your agent tools: {self.base_url}/pricing",
        )

    def send_trial_expired(self, to_email: str, name: str, listings_limit: int) -> bool:
        return self._send_email(
            to_email,
            "Your agent trial has ended",
            f"Hi {name or 'there'},\n\n"
            "Your agent trial has ended and your account is now a private seller account "
            f"with up to {listings_limit} active listings. "
            f"You can subscribe at any time: {self.base_url}/pricing",
        )
