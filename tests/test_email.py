import smtplib
from unittest.mock import MagicMock, patch

import pytest

from authkernel.service.email import EmailService, _describe_ttl


def _configured(**overrides):
    options = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="secret",
        from_email="noreply@example.com",
        base_url="https://auth.example.com/",
    )
    options.update(overrides)
    return EmailService(**options)


def test_dev_mode_logs_instead_of_sending():
    service = EmailService()

    with patch("authkernel.service.email.smtplib.SMTP") as smtp:
        assert service.send_password_reset("a@x.com", "token-1") is True
    smtp.assert_not_called()
    assert service.is_configured is False


def test_reset_email_carries_link_with_token():
    service = _configured()
    server = MagicMock()

    with patch("authkernel.service.email.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value = server
        assert service.send_password_reset("a@x.com", "token-1") is True

    smtp.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer", "secret")
    sender, recipient, message = server.sendmail.call_args.args
    assert (sender, recipient) == ("noreply@example.com", "a@x.com")
    assert "https://auth.example.com/?reset_token=token-1" in message


def test_implicit_tls_uses_smtp_ssl():
    service = _configured(smtp_use_tls=False, smtp_port=465)
    server = MagicMock()

    with patch("authkernel.service.email.smtplib.SMTP_SSL") as smtp_ssl:
        smtp_ssl.return_value.__enter__.return_value = server
        assert service.send_email_verification("a@x.com", "token-2") is True

    assert "verify_token=token-2" in server.sendmail.call_args.args[2]


@pytest.mark.parametrize(
    "error",
    [
        smtplib.SMTPAuthenticationError(535, b"bad credentials"),
        smtplib.SMTPException("boom"),
        ConnectionRefusedError("refused"),
    ],
)
def test_delivery_failures_return_false(error):
    service = _configured()

    with patch("authkernel.service.email.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value.sendmail.side_effect = error
        assert service.send_password_reset("a@x.com", "token-1") is False


def test_from_settings(settings):
    service = EmailService.from_settings(
        settings.model_copy(update={"smtp_host": "smtp.example.com", "email_from_address": "n@x.com"})
    )

    assert service.is_configured
    assert service.reset_ttl_minutes == settings.password_reset_ttl_minutes


@pytest.mark.parametrize(
    "minutes,text",
    [(30, "30 minutes"), (60, "1 hour"), (120, "2 hours"), (1440, "1 day"), (2880, "2 days")],
)
def test_describe_ttl(minutes, text):
    assert _describe_ttl(minutes) == text
