import asyncio
import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from lms.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    """Service for outbound leave notifications by email"""

    def __init__(self):
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = settings.SMTP_PORT
        self.smtp_user = settings.SMTP_USER
        self.smtp_password = settings.SMTP_PASSWORD
        self.email_from = settings.EMAIL_FROM

    @property
    def enabled(self) -> bool:
        return bool(self.smtp_user and self.smtp_password)

    def _send(self, to_email: str, subject: str, body: str) -> None:
        msg = MIMEMultipart()
        msg['From'] = self.email_from
        msg['To'] = to_email
        msg['Subject'] = subject

        msg.attach(MIMEText(body, 'plain'))

        with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
            server.starttls()
            server.login(self.smtp_user, self.smtp_password)
            server.send_message(msg)

    async def send_email(self, to_email: str, subject: str, body: str) -> bool:
        """Send a plain text email (logged only if no credentials)"""
        if not self.enabled:
            logger.info("MOCK EMAIL to %s: %s", to_email, subject)
            return True

        try:
            await asyncio.to_thread(self._send, to_email, subject, body)
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", to_email, e)
            return False

    async def send_leave_notification(self, to_email: str, name: str, title: str, message: str) -> bool:
        body = f"Dear {name},\n\n{message}\n\n-- {settings.APP_NAME}"
        return await self.send_email(to_email, title, body)


email_service = EmailService()
