"""Mail and webhook notifications for backup operations"""

import logging
import smtplib
import socket
from email.message import EmailMessage
from typing import TYPE_CHECKING, Any

import requests

if TYPE_CHECKING:
    from ..core.backup_engine import BackupReport
    from ..core.config_manager import ConfigManager

NOTIFY_POLICIES = ("always", "error", "never")


class NotificationManager:
    """Sends operation outcomes by mail and/or webhook; never raises"""

    def __init__(
        self,
        notify_on: str = "error",
        email: str = "",
        email_from: str = "dbtools@localhost",
        smtp_host: str = "localhost",
        smtp_port: int = 25,
        webhook: str = "",
        timeout: float = 10,
        session: Any = None,
    ):
        self.logger = logging.getLogger("NotificationManager")
        self.notify_on = notify_on if notify_on in NOTIFY_POLICIES else "error"
        self.email = email
        self.email_from = email_from
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.webhook = webhook
        self.timeout = timeout
        self.session = session or requests
        self.host = socket.gethostname()

    @classmethod
    def from_config(cls, config: "ConfigManager") -> "NotificationManager":
        return cls(
            notify_on=config.get_setting("notifications.notify_on", "error"),
            email=config.get_setting("notifications.email", ""),
            email_from=config.get_setting("notifications.email_from", "dbtools@localhost"),
            smtp_host=config.get_setting("notifications.smtp_host", "localhost"),
            smtp_port=int(config.get_setting("notifications.smtp_port", 25)),
            webhook=config.get_setting("notifications.webhook", ""),
            timeout=float(config.get_setting("notifications.timeout", 10)),
        )

    @property
    def enabled(self) -> bool:
        return self.notify_on != "never" and bool(self.email or self.webhook)

    def should_send(self, level: str) -> bool:
        if self.notify_on == "never":
            return False
        if self.notify_on == "error":
            return level == "error"
        return True

    def notify(self, subject: str, message: str, level: str = "info") -> bool:
        """Send to every configured transport if the policy allows this level

        Args:
            subject: Short summary line
            message: Body text
            level: 'info', 'warning' or 'error'

        Returns:
            True if at least one transport accepted the notification
        """
        if not self.should_send(level):
            return False

        sent = False
        if self.email:
            sent = self._send_mail(subject, message, level) or sent
        if self.webhook:
            sent = self._send_webhook(subject, message, level) or sent
        return sent

    def _send_mail(self, subject: str, message: str, level: str) -> bool:
        msg = EmailMessage()
        msg["Subject"] = f"[dbtools {level.upper()}] {subject} ({self.host})"
        msg["From"] = self.email_from
        msg["To"] = self.email
        msg.set_content(message)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as smtp:
                smtp.send_message(msg)
            self.logger.debug(f"Mail notification sent to {self.email}")
            return True
        except (OSError, smtplib.SMTPException) as e:
            self.logger.warning(f"Failed to send mail notification: {e}")
            return False

    def _send_webhook(self, subject: str, message: str, level: str) -> bool:
        payload = {"subject": subject, "message": message, "level": level, "host": self.host}
        try:
            response = self.session.post(self.webhook, json=payload, timeout=self.timeout)
            response.raise_for_status()
            self.logger.debug("Webhook notification sent")
            return True
        except requests.RequestException as e:
            self.logger.warning(f"Failed to send webhook notification: {e}")
            return False

    def notify_backup_report(self, report: "BackupReport") -> bool:
        """Summarise a backup run; failures are sent at error level"""
        if report.failed:
            failures = "\n".join(f"- {r.name}: {r.message}" for r in report.failures)
            return self.notify(
                "Backup completed with errors",
                f"{report.succeeded} succeeded, {report.failed} failed\n{failures}",
                "error",
            )
        return self.notify(
            "Backup completed successfully",
            f"{report.kind_label} backup: {report.succeeded} unit(s) backed up in {report.duration:.0f}s",
            "info",
        )

    def notify_failure(self, operation: str, error: str) -> bool:
        # Truncate long error messages
        error_short = error[:500] + "..." if len(error) > 500 else error
        return self.notify(f"{operation} failed", error_short, "error")
