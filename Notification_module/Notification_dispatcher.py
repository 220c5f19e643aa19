"""
Outbound delivery of consent OTPs.

Backends (NOTIFICATION_BACKEND):
- log: logs the delivery and reports success (development / staging)
- gateway: SMS over the HTTP gateway, email over SMTP

Every send returns (ok, error). Exceptions are converted, never raised.
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Tuple

import requests

from config import settings

logger = logging.getLogger(__name__)

SendResult = Tuple[bool, Optional[str]]

NO_PHONE_ERROR = "no phone on file"
NO_EMAIL_ERROR = "no email on file"


def _mask_phone(phone: str) -> str:
    return f"***{phone[-4:]}" if phone and len(phone) > 4 else "***"


def _mask_email(address: str) -> str:
    if not address or "@" not in address:
        return "***"
    local, domain = address.split("@", 1)
    return f"{local[:1]}***@{domain}"


class NotificationDispatcher:
    def send_sms(self, phone: Optional[str], message: str) -> SendResult:
        raise NotImplementedError

    def send_email(self, address: Optional[str], subject: str, body: str) -> SendResult:
        raise NotImplementedError


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Logs instead of sending. Message bodies (which carry codes) are only logged in development."""

    def __init__(self, include_content: Optional[bool] = None):
        if include_content is None:
            include_content = settings.ENVIRONMENT.lower() == "development"
        self.include_content = include_content

    def send_sms(self, phone: Optional[str], message: str) -> SendResult:
        if not phone:
            return False, NO_PHONE_ERROR
        if self.include_content:
            logger.info(f"[SMS] to {phone}: {message}")
        else:
            logger.info(f"[SMS] consent OTP queued to {_mask_phone(phone)}")
        return True, None

    def send_email(self, address: Optional[str], subject: str, body: str) -> SendResult:
        if not address:
            return False, NO_EMAIL_ERROR
        if self.include_content:
            logger.info(f"[EMAIL] to {address} subject={subject!r}: {body}")
        else:
            logger.info(f"[EMAIL] consent OTP queued to {_mask_email(address)} subject={subject!r}")
        return True, None


class GatewayNotificationDispatcher(NotificationDispatcher):
    def __init__(
        self,
        sms_gateway_url: Optional[str] = None,
        sms_api_key: Optional[str] = None,
        smtp_host: Optional[str] = None,
        smtp_port: Optional[int] = None,
        smtp_username: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_email: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.sms_gateway_url = sms_gateway_url or settings.SMS_GATEWAY_URL
        self.sms_api_key = sms_api_key or settings.SMS_GATEWAY_API_KEY
        self.smtp_host = smtp_host or settings.SMTP_HOST
        self.smtp_port = smtp_port or settings.SMTP_PORT
        self.smtp_username = smtp_username or settings.SMTP_USERNAME
        self.smtp_password = smtp_password or settings.SMTP_PASSWORD
        self.from_email = from_email or settings.SMTP_FROM_EMAIL
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS

    def send_sms(self, phone: Optional[str], message: str) -> SendResult:
        if not phone:
            return False, NO_PHONE_ERROR
        if not self.sms_gateway_url:
            return False, "SMS gateway not configured"

        headers = {"Content-Type": "application/json"}
        if self.sms_api_key:
            headers["Authorization"] = f"Bearer {self.sms_api_key}"

        try:
            response = requests.post(
                self.sms_gateway_url,
                json={"to": phone, "message": message},
                headers=headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            logger.info(f"SMS sent to {_mask_phone(phone)}")
            return True, None
        except requests.RequestException as e:
            logger.error(f"Failed to send SMS to {_mask_phone(phone)}: {e}")
            return False, str(e)

    def send_email(self, address: Optional[str], subject: str, body: str) -> SendResult:
        if not address:
            return False, NO_EMAIL_ERROR
        if not self.smtp_host:
            return False, "SMTP not configured"

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = self.from_email
        msg['To'] = address
        msg.attach(MIMEText(body, 'plain'))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                if self.smtp_username and self.smtp_password:
                    server.login(self.smtp_username, self.smtp_password)
                server.sendmail(self.from_email, [address], msg.as_string())
            logger.info(f"Email sent to {_mask_email(address)}")
            return True, None
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {_mask_email(address)}: {e}")
            return False, str(e)


def get_notification_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency: dispatcher for the configured backend."""
    backend = settings.NOTIFICATION_BACKEND.lower()
    if backend == "gateway":
        return GatewayNotificationDispatcher()
    if backend == "log":
        return LoggingNotificationDispatcher()
    raise ValueError(f"Unknown NOTIFICATION_BACKEND: {settings.NOTIFICATION_BACKEND}")
