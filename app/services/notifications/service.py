"""
Email notifications over SMTP.
smtplib is blocking, so each send runs in a worker thread.
"""
import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from app.core.config import settings as app_settings

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, settings=None) -> None:
        self.settings = settings or app_settings

    def is_configured(self) -> bool:
        return self.settings.smtp_configured

    async def send_email_notification(self, to: str | None, subject: str, body: str) -> bool:
        """Send a plain-text email. Returns False when disabled or on failure; never raises."""
        if not to:
            logger.warning("email_skipped", extra={"reason": "no_recipient"})
            return False
        if not self.is_configured():
            logger.warning("email_skipped", extra={"reason": "smtp_not_configured"})
            return False
        try:
            await asyncio.to_thread(self._send, to, subject, body)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_send_failed", extra={"error": f"{type(e).__name__}: {e}"})
            return False
        logger.info("email_sent", extra={"reason": subject[:50]})
        return True

    def _send(self, to: str, subject: str, body: str) -> None:
        s = self.settings
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = s.smtp_from
        msg["To"] = to
        msg.attach(MIMEText(body, "plain", "utf-8"))

        with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout) as smtp:
            if s.smtp_use_tls:
                smtp.starttls()
            if s.smtp_user and s.smtp_password:
                smtp.login(s.smtp_user, s.smtp_password)
            smtp.sendmail(s.smtp_from, [to], msg.as_string())
