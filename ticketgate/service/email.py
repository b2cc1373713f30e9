from __future__ import annotations

import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Optional

from ticketgate.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailService:
    """Plain-text transactional mail over SMTP.

    Without an SMTP host the message is logged instead of sent (dev mode).
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
        from_name: str = "Ticketgate",
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

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send one message. Returns False on any delivery failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                length=len(text_body),
            )
            return True

        msg = MIMEText(text_body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
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
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, otp: str) -> bool:
        subject = "Verify your email address"
        text_body = (
            "Enter this code to verify your email address:\n\n"
            f"    {otp}\n\n"
            "The code expires in 2 hours. If you did not create an account, ignore this message.\n"
        )
        return self._send_email(to_email, subject, text_body)

    def send_password_reset(self, to_email: str, reset_link: str) -> bool:
        subject = "Reset your password"
        text_body = (
            "We received a request to reset your password. Open the link below to choose a new one:\n\n"
            f"{reset_link}\n\n"
            "The link expires shortly and works once. If you did not ask for this, ignore this message.\n"
        )
        return self._send_email(to_email, subject, text_body)

    def send_welcome(self, to_email: str, username: Optional[str] = None) -> bool:
        greeting = f"Hi {username}," if username else "Hi,"
        text_body = f"{greeting}\n\nYour account is ready. Welcome aboard.\n"
        return self._send_email(to_email, "Welcome", text_body)

    def send_email_change(self, to_email: str, otp: str) -> bool:
        subject = "Confirm your new email address"
        text_body = (
            "Enter this code to move your account to this address:\n\n"
            f"    {otp}\n\n"
            "The code expires in 2 hours. If you did not ask for this, ignore this message.\n"
        )
        return self._send_email(to_email, subject, text_body)
