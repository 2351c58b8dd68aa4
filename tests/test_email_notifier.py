import asyncio
import smtplib
import time

import pytest

from collab_notifier import email_notifier
from collab_notifier.config import MailConfig
from collab_notifier.email_notifier import Mailer, build_message, send_email_ses
from collab_notifier.errors import DeliveryFailure


def _smtp_config(**overrides):
    values = dict(
        provider="smtp",
        from_email="bot@example.com",
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_username="bot@example.com",
        smtp_password="secret",
    )
    values.update(overrides)
    return MailConfig(**values)


class FakeSES:
    def __init__(self):
        self.calls = []

    def send_email(self, **kwargs):
        self.calls.append(kwargs)
        return {"MessageId": "msg-1"}


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.started_tls = False
        self.sent = []
        FakeSMTP.instances.append(self)

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.credentials = (username, password)

    def send_message(self, msg):
        self.sent.append(msg)

    def quit(self):
        pass


def test_build_message_has_text_and_html_parts():
    msg = build_message("bob@example.com", "Digest", "plain body", "<p>html body</p>", "bot@example.com")

    parts = [part.get_content_type() for part in msg.get_payload()]
    assert parts == ["text/plain", "text/html"]
    assert msg["To"] == "bob@example.com"


def test_send_email_ses_sends_both_bodies():
    ses = FakeSES()
    config = MailConfig(provider="ses", from_email="noreply@example.com")

    message_id = send_email_ses("bob@example.com", "Digest", "text", "<p>html</p>", config, client=ses)

    assert message_id == "msg-1"
    call = ses.calls[0]
    assert call["Source"] == "noreply@example.com"
    assert call["Destination"] == {"ToAddresses": ["bob@example.com"]}
    assert call["Message"]["Body"]["Html"] == {"Data": "<p>html</p>"}


def test_mailer_smtp_uses_starttls(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(email_notifier.smtplib, "SMTP", FakeSMTP)

    sent = asyncio.run(Mailer(_smtp_config()).send("bob@example.com", "Digest", "hello", "<p>hello</p>"))

    assert sent is True
    server = FakeSMTP.instances[0]
    assert server.started_tls
    assert server.credentials == ("bot@example.com", "secret")
    assert server.sent[0]["Subject"] == "Digest"


def test_disabled_mailer_sends_nothing():
    mailer = Mailer(MailConfig(provider="disabled", from_email=""))

    assert asyncio.run(mailer.send("bob@example.com", "Digest", "hello")) is False


def test_empty_body_is_not_sent(monkeypatch):
    monkeypatch.setattr(email_notifier.smtplib, "SMTP", FakeSMTP)

    assert asyncio.run(Mailer(_smtp_config()).send("bob@example.com", "Digest", "   ")) is False


def test_smtp_error_becomes_delivery_failure(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(email_notifier.smtplib, "SMTP", refuse)

    with pytest.raises(DeliveryFailure, match="connection refused"):
        asyncio.run(Mailer(_smtp_config()).send("bob@example.com", "Digest", "hello"))


def test_auth_error_becomes_delivery_failure(monkeypatch):
    class BadLogin(FakeSMTP):
        def login(self, username, password):
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    monkeypatch.setattr(email_notifier.smtplib, "SMTP", BadLogin)

    with pytest.raises(DeliveryFailure):
        asyncio.run(Mailer(_smtp_config()).send("bob@example.com", "Digest", "hello"))


def test_slow_provider_times_out(monkeypatch):
    mailer = Mailer(_smtp_config(timeout_seconds=0.05))
    monkeypatch.setattr(mailer, "_send_blocking", lambda *args: time.sleep(0.3))

    with pytest.raises(DeliveryFailure, match="timed out"):
        asyncio.run(mailer.send("bob@example.com", "Digest", "hello"))
