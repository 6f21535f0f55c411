from __future__ import annotations

import smtplib
import ssl
from contextlib import contextmanager
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterator, Optional

from wayfarer.logging import get_logger
from wayfarer.storage.models import OTPPurpose

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

# subject, lead-in sentence
_OTP_COPY = {
    OTPPurpose.EMAIL_VERIFICATION: ("Verify Your Email", "Your verification code is"),
    OTPPurpose.TWO_FACTOR_LOGIN: ("Your Login Code", "Your two-factor authentication code is"),
    OTPPurpose.PASSWORD_RESET: ("Password Reset Code", "Your password reset code is"),
    OTPPurpose.ACCOUNT_RECOVERY: ("Account Recovery Code", "Your account recovery code is"),
}

_OTP_HTML = """\
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{title}</h1>
        <p>{lead}: <strong>{code}</strong></p>
        <p>This code expires in {ttl} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
    </div>
</body>
</html>
"""

_OTP_TEXT = (
    "{lead}: {code}\n\n"
    "This code expires in {ttl} minutes.\n\n"
    "If you didn't request this, you can safely ignore this email.\n"
)


class EmailService:
    """Transactional email over SMTP.

    With no SMTP host configured, messages are logged (without their body)
    and reported as delivered, so development and tests need no mail server.
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
        from_name: str = "Wayfarer",
        otp_ttl_minutes: int = 15,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.otp_ttl_minutes = otp_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        # Clients render the last alternative they understand, so HTML goes last
        if text_body:
            message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))
        return message

    @contextmanager
    def _connection(self) -> Iterator[smtplib.SMTP]:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            yield server

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; returns False instead of raising on failure."""
        if not self.is_configured:
            logger.info("email_dev_mode", to_email=to_email, subject=subject)
            return True

        message = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._connection() as server:
                server.sendmail(self.from_email, to_email, message.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(exc))
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to_email=to_email,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except OSError as exc:
            # ssl.SSLError, refused connections, DNS failures and timeouts
            logger.error(
                "email_transport_failed",
                to_email=to_email,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to_email=to_email, subject=subject)
        return True

    def send_otp(self, to_email: str, code: str, purpose: OTPPurpose) -> bool:
        title, lead = _OTP_COPY[OTPPurpose(purpose)]
        fields = {"title": title, "lead": lead, "code": code, "ttl": self.otp_ttl_minutes}
        return self.send(
            to_email,
            f"{title} - {self.from_name}",
            _OTP_HTML.format(**fields),
            _OTP_TEXT.format(**fields),
        )
