"""Tests for the SMTP configuration check command."""
import smtplib
from typing import Any
from unittest.mock import AsyncMock

import pytest

from redcart.config import Settings
from redcart.integrations.email_notifier import EmailNotifier
from redcart.scripts.smtp_check import missing_keys, run_check


@pytest.fixture
def smtp_settings(test_settings: Settings) -> Settings:
    return test_settings.model_copy(
        update={
            "smtp_enabled": True,
            "smtp_host": "smtp.example.com",
            "smtp_port": 587,
            "smtp_user": "mailer@example.com",
            "smtp_pass": "app pass word",
            "smtp_from": "RedCart <orders@example.com>",
        }
    )


class TestSmtpCheck:
    @pytest.mark.unit
    def test_missing_keys_uses_environment_names(self, smtp_settings: Settings) -> None:
        settings = smtp_settings.model_copy(update={"smtp_port": None, "smtp_from": " "})

        assert missing_keys(settings) == ["SMTP_PORT", "SMTP_FROM"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disabled(self, test_settings: Settings, capsys: Any) -> None:
        assert await run_check(test_settings) == 1
        assert "SMTP_ENABLED is false" in capsys.readouterr().err

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_only(self, smtp_settings: Settings, mocker: Any, capsys: Any) -> None:
        smtp = mocker.patch("redcart.integrations.email_notifier.smtplib.SMTP")
        server = smtp.return_value.__enter__.return_value

        assert await run_check(smtp_settings) == 0

        assert "SMTP verification: OK" in capsys.readouterr().out
        server.login.assert_called_once_with("mailer@example.com", "apppassword")
        server.noop.assert_called_once_with()
        server.send_message.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_send_test_defaults_to_smtp_user(
        self, smtp_settings: Settings, mocker: Any, capsys: Any
    ) -> None:
        smtp = mocker.patch("redcart.integrations.email_notifier.smtplib.SMTP")
        server = smtp.return_value.__enter__.return_value

        assert await run_check(smtp_settings, send_test=True) == 0

        message = server.send_message.call_args.args[0]
        assert message["To"] == "mailer@example.com"
        assert message["Subject"] == "RedCart SMTP Test"
        assert "Test email sent to mailer@example.com" in capsys.readouterr().out

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verification_failure(self, smtp_settings: Settings, capsys: Any) -> None:
        notifier = AsyncMock(spec=EmailNotifier)
        notifier.verify_connection.side_effect = smtplib.SMTPAuthenticationError(535, b"Bad credentials")

        assert await run_check(smtp_settings, notifier) == 1
        assert "SMTP verification failed" in capsys.readouterr().err
        notifier.send_email.assert_not_awaited()
