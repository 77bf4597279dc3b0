"""
Notification sender
Sends the run summary by e-mail using the notifiers library
"""
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from notifiers import get_notifier

from zipbackup.models import EmailSettings


logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    """Result of notification attempt"""
    success: bool
    error_message: Optional[str] = None


def send_email(
    email_settings: EmailSettings,
    password: Optional[str],
    subject: str,
    body: str,
    attachments: Optional[List[str]] = None
) -> NotificationResult:
    """
    Send an e-mail through the notifiers SMTP provider.

    Args:
        email_settings: SMTP server, sender and recipient
        password: Decoded SMTP password
        subject: Message subject
        body: Message body (plain text)
        attachments: Paths of files to attach; missing files are skipped

    Returns:
        NotificationResult
    """
    notifier = get_notifier('email')

    payload = {
        'message': body,
        'subject': subject,
        'to': email_settings.recipient,
        'from': email_settings.username,
        'host': email_settings.server,
        'port': email_settings.port,
        'tls': email_settings.use_tls,
        'username': email_settings.username,
        'password': password or '',
        'login': bool(password),
    }

    existing = [path for path in attachments or [] if os.path.isfile(path)]
    if existing:
        payload['attachments'] = existing

    try:
        result = notifier.notify(**payload)
    except Exception as e:
        return NotificationResult(False, f"Failed to send email notification: {e}")

    # Check result status
    if result is not None and hasattr(result, 'status'):
        status = getattr(result.status, 'value', result.status)
        if str(status).lower() == 'success':
            return NotificationResult(True)
        errors = getattr(result, 'errors', None) or ['Unknown error']
        return NotificationResult(False, f"Notification failed: {', '.join(str(e) for e in errors)}")

    return NotificationResult(True)
