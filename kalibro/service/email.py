from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from kalibro.logging import get_logger

logger = get_logger(__name__)

_SUBJECTS = {
    "reset": "Your Kalibro password reset code",
    "register": "Verify your email for Kalibro",
}

_INTROS = {
    "reset": "We received a request to reset the password for your library account.",
    "register": "Use this code to finish creating your library account.",
}


class EmailService:
    """Outbound mail for verification codes.

    Without SMTP settings delivery fails, unless ``dev_mode`` is on: then the
    message is dropped after logging its recipient and subject, and delivery
    reports success. The body is never logged because it carries the code.
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
        from_name: str = "Kalibro Library",
        timeout: float = 30.0,
        dev_mode: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout
        self.dev_mode = dev_mode

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _deliver(self, to_email: str, message: str) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, message)
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, message)

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message. Returns False on any delivery failure."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            if self.dev_mode:
                logger.info("email_dev_mode", recipient=recipient, subject=subject)
                return True
            logger.error("email_not_configured", recipient=recipient, subject=subject)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                error_code=exc.smtp_code,
                error=str(exc),
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                recipient=recipient,
                refused=len(exc.recipients),
                error=str(exc),
            )
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            # Covers connection refusal and timeouts
            logger.error(
                "email_transport_error",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    def send_otp(self, to_email: str, code: str, purpose: str, ttl_minutes: int) -> bool:
        """Send a verification code for password reset or registration."""
        subject = _SUBJECTS.get(purpose, "Your Kalibro verification code")
        intro = _INTROS.get(purpose, "Use this code to continue.")
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <h2>Kalibro Library</h2>
  <p>{intro}</p>
  <p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{code}</p>
  <p>This code expires in {ttl_minutes} minutes. If you did not request it, you can ignore this email.</p>
</body>
</html>
"""
        text_body = (
            f"{intro}\n\nYour code: {code}\n\n"
            f"This code expires in {ttl_minutes} minutes. "
            "If you did not request it, you can ignore this email."
        )
        return self.send(to_email, subject, html_body, text_body)


__all__ = ["EmailService"]
