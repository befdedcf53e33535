import logging
import smtplib
import threading
from unittest import mock

from pydantic import SecretStr

from opinions_identity.models.auth_models import NotificationJob, ServiceResult
from opinions_identity.models.enums import NotificationKind
from opinions_identity.services.email_service import EmailService
from opinions_identity.services.notification_dispatcher import NotificationDispatcher


def _job(recipient="ada@example.com", kind=NotificationKind.WELCOME, token=None):
    return NotificationJob(kind=kind, recipient=recipient, display_name="Ada Lovelace", token=token)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

def test_dispatch_delivers_on_the_worker_thread(logger, notifier):
    dispatcher = NotificationDispatcher(deliver=notifier, logger=logger)
    dispatcher.start()
    try:
        assert dispatcher.dispatch(_job()) is True
        dispatcher.wait_idle()
    finally:
        dispatcher.stop(timeout=2.0)
    assert [job.recipient for job in notifier.jobs] == ["ada@example.com"]
    assert not dispatcher.is_running


def test_dispatch_never_blocks_and_drops_when_full(logger, notifier, caplog):
    dispatcher = NotificationDispatcher(deliver=notifier, logger=logger, maxsize=1)

    with caplog.at_level(logging.ERROR):
        assert dispatcher.dispatch(_job("first@example.com")) is True
        assert dispatcher.dispatch(_job("second@example.com")) is False

    assert dispatcher.pending == 1
    assert any(getattr(r, "event", None) == "NOTIFICATION_DROPPED" for r in caplog.records)


def test_delivery_failures_are_logged_and_not_retried(logger, caplog):
    calls = []

    def _failing(job):
        calls.append(job)
        raise smtplib.SMTPException("relay refused")

    dispatcher = NotificationDispatcher(deliver=_failing, logger=logger)
    dispatcher.start()
    try:
        with caplog.at_level(logging.ERROR):
            dispatcher.dispatch(_job())
            dispatcher.wait_idle()
    finally:
        dispatcher.stop(timeout=2.0)

    assert len(calls) == 1
    assert any(getattr(r, "event", None) == "NOTIFICATION_FAILED" for r in caplog.records)


def test_unsuccessful_result_is_logged(logger, caplog):
    dispatcher = NotificationDispatcher(
        deliver=lambda job: ServiceResult(success=False, error="mailbox full"),
        logger=logger,
    )
    dispatcher.start()
    try:
        with caplog.at_level(logging.WARNING):
            dispatcher.dispatch(_job())
            dispatcher.wait_idle()
    finally:
        dispatcher.stop(timeout=2.0)
    assert "mailbox full" in caplog.text


def test_slow_delivery_does_not_block_the_caller(logger):
    release = threading.Event()

    def _slow(job):
        release.wait(timeout=5.0)

    dispatcher = NotificationDispatcher(deliver=_slow, logger=logger)
    dispatcher.start()
    try:
        for _ in range(3):
            assert dispatcher.dispatch(_job()) is True
    finally:
        release.set()
        dispatcher.wait_idle()
        dispatcher.stop(timeout=2.0)


# ---------------------------------------------------------------------------
# Email composition
# ---------------------------------------------------------------------------

def _mail_config(config):
    return config.model_copy(update={
        "MAIL_USERNAME": "noreply@example.com",
        "MAIL_PASSWORD": SecretStr("app-password"),
        "FRONTEND_URL": "https://opinions.example/",
    })


def test_verification_email_links_to_the_frontend(config, logger):
    service = EmailService(config=_mail_config(config), logger=logger)
    token = "a" * 64

    with mock.patch("smtplib.SMTP") as smtp_cls:
        result = service.deliver(_job(kind=NotificationKind.VERIFICATION, token=token))

    assert result.success is True
    smtp = smtp_cls.return_value
    smtp.starttls.assert_called_once()
    smtp.login.assert_called_once_with("noreply@example.com", "app-password")
    (message,), _ = smtp.send_message.call_args
    assert message["To"] == "ada@example.com"
    assert f"https://opinions.example/verify-email?token={token}" in message.get_content()
    smtp.quit.assert_called_once()


def test_reset_email_uses_reset_link(config, logger):
    service = EmailService(config=_mail_config(config), logger=logger)
    with mock.patch("smtplib.SMTP") as smtp_cls:
        service.deliver(_job(kind=NotificationKind.PASSWORD_RESET, token="b" * 64))
    (message,), _ = smtp_cls.return_value.send_message.call_args
    assert "/reset-password?token=" + "b" * 64 in message.get_content()


def test_token_email_without_token_is_refused(config, logger):
    service = EmailService(config=_mail_config(config), logger=logger)
    with mock.patch("smtplib.SMTP") as smtp_cls:
        result = service.deliver(_job(kind=NotificationKind.VERIFICATION))
    assert result.success is False
    smtp_cls.assert_not_called()


def test_missing_smtp_configuration_returns_failure(config, logger):
    service = EmailService(config=config, logger=logger)
    with mock.patch("smtplib.SMTP") as smtp_cls:
        result = service.deliver(_job())
    assert result.success is False
    assert "configuration" in result.error
    smtp_cls.assert_not_called()


def test_smtp_errors_become_failed_results(config, logger):
    service = EmailService(config=_mail_config(config), logger=logger)
    with mock.patch("smtplib.SMTP") as smtp_cls:
        smtp_cls.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad")
        result = service.deliver(_job(kind=NotificationKind.PASSWORD_CHANGED))
    assert result.success is False
    assert "authentication" in result.error
