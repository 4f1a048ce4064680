"""Tests for SMTP notifications."""

import smtplib
from unittest.mock import MagicMock, patch

from steprun.notify import SmtpNotifier, default_sender


class TestSmtpNotifier:
    """Tests for SmtpNotifier."""

    def test_default_sender(self, monkeypatch):
        monkeypatch.setenv("USER", "alice")
        monkeypatch.setattr("steprun.notify.socket.gethostname", lambda: "box")
        assert default_sender() == "steprun on box <alice@box>"

    def test_build_message(self):
        notifier = SmtpNotifier(sender="me@example.com")
        message = notifier.build_message("Job OK: x (1.00s)", "body ✓", "ops@example.com")

        assert message["Subject"] == "Job OK: x (1.00s)"
        assert message["To"] == "ops@example.com"
        assert message["From"] == "me@example.com"
        assert "body ✓" in message.get_content()

    def test_send(self):
        smtp = MagicMock()
        with patch("steprun.notify.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value = smtp
            result = SmtpNotifier("mail.local", 2525, sender="me@example.com").send(
                "subject", "body", "ops@example.com"
            )

        smtp_cls.assert_called_once_with("mail.local", 2525)
        smtp.send_message.assert_called_once()
        assert result == {"sent": True, "to": "ops@example.com", "subject": "subject", "error": None}

    def test_send_failure_reported(self):
        with patch("steprun.notify.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, "down")):
            result = SmtpNotifier(sender="me@example.com").send("s", "b", "ops@example.com")

        assert result["sent"] is False
        assert "down" in result["error"]
