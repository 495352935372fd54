from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from harmony_core.logging import get_logger

logger = get_logger(__name__)


def _redact(address: str) -> str:
    local, _, domain = address.partition("@")
    return f"{local[:2]}***@{domain}" if domain else "redacted"


class MailService:
    """Delivers registration codes; failures are logged and reported as ``False``."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Harmony",
        code_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.sender = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.sender)

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def send_verification_code(self, to_email: str, code: str) -> bool:
        if not self.is_configured:
            # Dev mode: no SMTP, the code only goes to the log
            logger.info("verification_code_dev_mode", to=_redact(to_email), code=code)
            return True

        msg = EmailMessage()
        msg["Subject"] = "Verification code - Harmony"
        msg["From"] = f"{self.from_name} <{self.sender}>"
        msg["To"] = to_email
        msg.set_content(
            f"Your Harmony registration code: {code}\n"
            f"It is valid for {self.code_ttl_minutes} minutes. Do not share it with anyone.\n"
        )
        try:
            with self._connect() as server:
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "verification_code_send_failed",
                to=_redact(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("verification_code_sent", to=_redact(to_email))
        return True


__all__ = ["MailService"]
