import logging
import smtplib
from unittest.mock import MagicMock, patch

import requests

from config import settings
from Notification_module.Notification_dispatcher import (
    GatewayNotificationDispatcher,
    LoggingNotificationDispatcher,
    get_notification_dispatcher,
)


def _gateway(**overrides):
    options = dict(
        sms_gateway_url="https://sms.example.com/send",
        sms_api_key="key-123",
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_username="mailer",
        smtp_password="secret",
        from_email="consent@example.com",
        timeout=3,
    )
    options.update(overrides)
    return GatewayNotificationDispatcher(**options)


def test_logging_dispatcher_masks_content_outside_development(caplog):
    dispatcher = LoggingNotificationDispatcher(include_content=False)

    with caplog.at_level(logging.INFO):
        assert dispatcher.send_sms("+15550001111", "Your consent OTP is: 123456.") == (True, None)
        assert dispatcher.send_email("patient@example.com", "Subject", "code 123456") == (True, None)

    assert "123456" not in caplog.text
    assert "***1111" in caplog.text


def test_logging_dispatcher_shows_content_in_development(caplog):
    dispatcher = LoggingNotificationDispatcher(include_content=True)

    with caplog.at_level(logging.INFO):
        dispatcher.send_sms("+15550001111", "Your consent OTP is: 123456.")

    assert "123456" in caplog.text


def test_missing_destinations():
    dispatcher = LoggingNotificationDispatcher(include_content=False)
    assert dispatcher.send_sms(None, "hi") == (False, "no phone on file")
    assert dispatcher.send_email("", "s", "b") == (False, "no email on file")


@patch("Notification_module.Notification_dispatcher.requests.post")
def test_gateway_sms_posts_with_timeout(mock_post):
    mock_post.return_value = MagicMock(status_code=200)

    assert _gateway().send_sms("+15550001111", "hello") == (True, None)

    args, kwargs = mock_post.call_args
    assert args[0] == "https://sms.example.com/send"
    assert kwargs["json"] == {"to": "+15550001111", "message": "hello"}
    assert kwargs["headers"]["Authorization"] == "Bearer key-123"
    assert kwargs["timeout"] == 3


@patch("Notification_module.Notification_dispatcher.requests.post")
def test_gateway_sms_failure_is_returned(mock_post):
    mock_post.side_effect = requests.ConnectionError("gateway unreachable")

    ok, error = _gateway().send_sms("+15550001111", "hello")

    assert ok is False
    assert "gateway unreachable" in error


@patch("Notification_module.Notification_dispatcher.requests.post")
def test_gateway_sms_http_error_is_returned(mock_post):
    response = MagicMock()
    response.raise_for_status.side_effect = requests.HTTPError("502 Bad Gateway")
    mock_post.return_value = response

    assert _gateway().send_sms("+15550001111", "hello") == (False, "502 Bad Gateway")


def test_gateway_sms_not_configured():
    dispatcher = _gateway()
    dispatcher.sms_gateway_url = None
    assert dispatcher.send_sms("+15550001111", "hello") == (False, "SMS gateway not configured")


@patch("Notification_module.Notification_dispatcher.smtplib.SMTP")
def test_gateway_email_uses_starttls_and_login(mock_smtp):
    server = MagicMock()
    mock_smtp.return_value.__enter__.return_value = server

    assert _gateway().send_email("patient@example.com", "Subject", "Body") == (True, None)

    mock_smtp.assert_called_once_with("smtp.example.com", 587, timeout=3)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer", "secret")
    from_addr, to_addrs, message = server.sendmail.call_args[0]
    assert from_addr == "consent@example.com"
    assert to_addrs == ["patient@example.com"]
    assert "Subject: Subject" in message


@patch("Notification_module.Notification_dispatcher.smtplib.SMTP")
def test_gateway_email_failure_is_returned(mock_smtp):
    mock_smtp.side_effect = smtplib.SMTPException("relay denied")

    assert _gateway().send_email("patient@example.com", "Subject", "Body") == (False, "relay denied")


def test_backend_selection(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATION_BACKEND", "gateway")
    assert isinstance(get_notification_dispatcher(), GatewayNotificationDispatcher)

    monkeypatch.setattr(settings, "NOTIFICATION_BACKEND", "log")
    assert isinstance(get_notification_dispatcher(), LoggingNotificationDispatcher)
