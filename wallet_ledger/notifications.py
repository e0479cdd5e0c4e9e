"""
Notification Module

Best-effort delivery of transfer alerts. Senders report success as a bool;
the dispatcher runs them off the request path and only ever logs failures,
so a notification problem can never fail or roll back a settled transfer.
"""

from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from email.message import EmailMessage
from typing import Optional, Tuple
import smtplib

import requests

from .logging_config import get_logger, log_action

logger = get_logger("wallet_ledger.notifications")


class NotificationSender(ABC):
    """Abstract outbound notification channel"""
    
    @abstractmethod
    def send(self, to_email: str, subject: str, body: str) -> bool:
        """Send a notification. Returns True if successful."""
        pass


class LogNotificationSender(NotificationSender):
    """Logs notifications instead of delivering them, for development"""
    
    def send(self, to_email: str, subject: str, body: str) -> bool:
        logger.info(f"EMAIL to {to_email}: {subject} | {body[:100]}")
        return True


class SMTPNotificationSender(NotificationSender):
    """Email delivery over SMTP with optional STARTTLS and login"""
    
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        sender: Optional[str] = None,
        timeout: float = 10.0
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender or username
        self.timeout = timeout
    
    def _build_message(self, to_email: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to_email
        message["Subject"] = subject
        message.set_content(body)
        return message
    
    def send(self, to_email: str, subject: str, body: str) -> bool:
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                smtp.send_message(self._build_message(to_email, subject, body))
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"SMTP send to {to_email} failed: {e}")
            return False


class WebhookNotificationSender(NotificationSender):
    """Posts notifications as JSON to a webhook for external integrations"""
    
    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout
    
    def send(self, to_email: str, subject: str, body: str) -> bool:
        try:
            response = requests.post(
                self.url,
                json={"to": to_email, "subject": subject, "body": body},
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
            return 200 <= response.status_code < 300
        except requests.RequestException as e:
            logger.warning(f"Webhook send failed: {e}")
            return False


class NotificationDispatcher:
    """
    Fire-and-forget wrapper around a sender
    
    With ``max_workers=0`` sends run inline on the calling thread, which keeps
    tests deterministic; failures are still only logged.
    """
    
    def __init__(self, sender: NotificationSender, max_workers: int = 2):
        self.sender = sender
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notify"
        ) if max_workers > 0 else None
    
    def dispatch(self, to_email: str, subject: str, body: str) -> Optional[Future]:
        """Queue a notification; never raises"""
        if self._executor is None:
            self._deliver(to_email, subject, body)
            return None
        try:
            return self._executor.submit(self._deliver, to_email, subject, body)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning(f"Notification to {to_email} dropped: {e}")
            return None
    
    def _deliver(self, to_email: str, subject: str, body: str) -> bool:
        try:
            delivered = self.sender.send(to_email, subject, body)
        except Exception as e:
            logger.error(f"Notification sender raised: {e}", exc_info=True)
            delivered = False
        
        log_action(
            logger, "info" if delivered else "warning",
            "Notification delivered" if delivered else "Notification failed",
            action="notify", resource=f"email:{to_email}",
            extra={"subject": subject}
        )
        return delivered
    
    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def transfer_notification(display_amount: str, unit_label: str, to_address: str,
                          new_balance: str, fiat_amount: Optional[str] = None) -> Tuple[str, str]:
    """Subject and body of the alert sent to a transfer's sender"""
    amount_text = f"{display_amount} {unit_label}"
    if fiat_amount is not None:
        amount_text += f" (${fiat_amount} USD)"
    subject = f"Transfer sent: {amount_text}"
    body = (
        f"You sent {amount_text} to {to_address}.\n\n"
        f"Your new balance is {new_balance} {unit_label}.\n\n"
        f"If you did not authorize this transfer, secure your wallet immediately."
    )
    return subject, body


def create_notification_sender(config) -> Optional[NotificationSender]:
    """Create the configured sender, or None when notifications are disabled"""
    if not config.notifications_enabled:
        return None
    if config.smtp_host:
        return SMTPNotificationSender(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_username or None,
            password=config.smtp_password or None,
            use_tls=config.smtp_use_tls,
            sender=config.smtp_sender
        )
    if config.notification_webhook_url:
        return WebhookNotificationSender(config.notification_webhook_url)
    return LogNotificationSender()
