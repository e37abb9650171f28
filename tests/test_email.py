"""Tests for the email notification channel."""

from collections.abc import Callable
from unittest.mock import MagicMock, patch

import pytest

from dbwatch.alerts.email import EmailChannel, render_html, render_subject
from dbwatch.config import EmailSettings, SMTPSettings
from dbwatch.models import Finding


@pytest.fixture
def email_settings() -> EmailSettings:
    return EmailSettings(
        enabled=True,
        smtp=SMTPSettings(host="smtp.test", port=587, username="alerts@test.com", password="smtp-pass"),
        sender="alerts@test.com",
        to=["dba@test.com", "oncall@test.com"],
    )


class TestRendering:
    def test_subject(self, make_finding: Callable[..., Finding]) -> None:
        assert render_subject(make_finding(type="lock_accumulation", level="warning")) == (
            "[WARNING] DB Alert - LOCK ACCUMULATION"
        )

    def test_values_escaped(self, make_finding: Callable[..., Finding]) -> None:
        body = render_html(make_finding(query_text="SELECT '<script>alert(1)</script>'", message="a < b & c"))
        assert "<script>" not in body
        assert "&lt;script&gt;" in body
        assert "a &lt; b &amp; c" in body

    def test_lock_details_and_analysis(self, make_finding: Callable[..., Finding]) -> None:
        finding = make_finding(
            type="blocking",
            lock_details={"blocker_lock_mode": "AccessExclusiveLock", "object_name": None},
            ai_analysis={
                "root_cause": {"cause": "long DDL", "confidence": 0.8},
                "optimization": {"suggestions": [{"description": "run migrations off-peak"}]},
            },
        )
        body = render_html(finding)
        assert "AccessExclusiveLock" in body
        assert "object_name" not in body
        assert "long DDL" in body
        assert "run migrations off-peak" in body


class TestEmailChannel:
    def test_enabled_needs_configuration(self, email_settings: EmailSettings) -> None:
        assert EmailChannel(email_settings).enabled is True
        email_settings.to = []
        assert EmailChannel(email_settings).enabled is False

    async def test_send_success(self, email_settings: EmailSettings, make_finding: Callable[..., Finding]) -> None:
        with patch("dbwatch.alerts.email.smtplib.SMTP") as mock_smtp_cls:
            mock_server = MagicMock()
            mock_smtp_cls.return_value.__enter__ = MagicMock(return_value=mock_server)
            mock_smtp_cls.return_value.__exit__ = MagicMock(return_value=False)

            result = await EmailChannel(email_settings).send(make_finding())

        assert result is True
        mock_smtp_cls.assert_called_once_with("smtp.test", 587, timeout=30)
        mock_server.starttls.assert_called_once()
        mock_server.login.assert_called_once_with("alerts@test.com", "smtp-pass")
        msg = mock_server.send_message.call_args[0][0]
        assert msg["Subject"] == "[CRITICAL] DB Alert - SLOW OPERATION"
        assert msg["To"] == "dba@test.com, oncall@test.com"

    async def test_no_login_without_username(
        self, email_settings: EmailSettings, make_finding: Callable[..., Finding]
    ) -> None:
        email_settings.smtp.username = ""
        email_settings.smtp.starttls = False
        with patch("dbwatch.alerts.email.smtplib.SMTP") as mock_smtp_cls:
            mock_server = MagicMock()
            mock_smtp_cls.return_value.__enter__ = MagicMock(return_value=mock_server)
            mock_smtp_cls.return_value.__exit__ = MagicMock(return_value=False)

            assert await EmailChannel(email_settings).send(make_finding()) is True

        mock_server.starttls.assert_not_called()
        mock_server.login.assert_not_called()

    async def test_send_failure(self, email_settings: EmailSettings, make_finding: Callable[..., Finding]) -> None:
        with patch("dbwatch.alerts.email.smtplib.SMTP") as mock_smtp_cls:
            mock_smtp_cls.return_value.__enter__ = MagicMock(side_effect=ConnectionError("SMTP down"))
            result = await EmailChannel(email_settings).send(make_finding())
        assert result is False

    async def test_not_configured(self, make_finding: Callable[..., Finding]) -> None:
        with patch("dbwatch.alerts.email.smtplib.SMTP") as mock_smtp_cls:
            assert await EmailChannel(EmailSettings(enabled=True)).send(make_finding()) is False
        mock_smtp_cls.assert_not_called()
