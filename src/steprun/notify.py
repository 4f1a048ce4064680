"""Job completion notifications via SMTP.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import os
import smtplib
import socket
from email.message import EmailMessage
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def default_sender() -> str:
    """Sender address: 'steprun on <host> <user@host>'."""
    hostname = socket.gethostname()
    user = os.environ.get("USER", "unknown")
    return f"steprun on {hostname} <{user}@{hostname}>"


class SmtpNotifier:
    """Sends plain-text notification emails through an SMTP relay."""

    def __init__(self, host: str = "localhost", port: int = 25, sender: Optional[str] = None):
        self.host = host
        self.port = port
        self.sender = sender or default_sender()

    def build_message(self, subject: str, body: str, to: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body, charset="utf-8")
        return message

    def send(self, subject: str, body: str, to: str) -> Dict[str, Any]:
        """Send one email.

        Args:
            subject: Email subject
            body: Email body text
            to: Recipient address

        Returns:
            {sent: bool, to: str, subject: str, error: str|None}
        """
        message = self.build_message(subject, body, to)
        try:
            with smtplib.SMTP(self.host, self.port) as smtp:
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send notification to {to}: {e}")
            return {"sent": False, "to": to, "subject": subject, "error": str(e)}

        logger.info(f"Sent notification to {to}: {subject}")
        return {"sent": True, "to": to, "subject": subject, "error": None}
