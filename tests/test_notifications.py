"""Tests for notification transports and the channel dispatcher."""

from __future__ import annotations

import json
import smtplib
from types import SimpleNamespace
from typing import List

import httpx
import pytest

from panelflow.service.errors import NotificationError
from panelflow.service.notifications import (
    EmailTransport,
    Notification,
    NotificationChannel,
    NotificationDispatcher,
    SmsTransport,
    SystemTransport,
    WebhookTransport,
)


def make_notification(channel, recipients=None, **fields):
    return Notification(
        channel=channel,
        title=fields.pop("title", "Review complete"),
        message=fields.pop("message", "ACME rated buy"),
        recipients=list(recipients or []),
        **fields,
    )


class FakeSMTP:
    """Records the SMTP conversation instead of opening a socket."""

    instances: List["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, sender, recipient, body):
        self.sent.append((sender, recipient, body))


# =============================================================================
# Email
# =============================================================================


class TestEmailTransport:
    def test_dev_mode_logs_instead_of_sending(self):
        transport = EmailTransport()

        result = transport.send(make_notification(NotificationChannel.EMAIL, ["pm@example.com"]))

        assert not transport.is_configured
        assert result.delivered == ["pm@example.com"]
        assert result.detail == "logged (smtp not configured)"

    def test_sends_through_smtp(self, monkeypatch):
        FakeSMTP.instances = []
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        transport = EmailTransport(
            smtp_host="smtp.example.com",
            smtp_user="bot@example.com",
            smtp_password="secret",
        )

        result = transport.send(make_notification(NotificationChannel.EMAIL, ["a@example.com", "b@example.com"]))

        server = FakeSMTP.instances[0]
        assert server.started_tls
        assert server.logged_in == ("bot@example.com", "secret")
        assert [recipient for _, recipient, _ in server.sent] == ["a@example.com", "b@example.com"]
        assert "Subject: Review complete" in server.sent[0][2]
        assert result.delivered == ["a@example.com", "b@example.com"]

    def test_smtp_failure_raises_notification_error(self, monkeypatch):
        class RefusingSMTP(FakeSMTP):
            def login(self, user, password):
                raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

        monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
        transport = EmailTransport(smtp_host="smtp.example.com", smtp_user="bot@example.com", smtp_password="x")

        with pytest.raises(NotificationError) as excinfo:
            transport.send(make_notification(NotificationChannel.EMAIL, ["a@example.com"]))

        assert excinfo.value.message == "email authentication failed"


# =============================================================================
# SMS / Webhook
# =============================================================================


class TestHttpTransports:
    def test_sms_gateway_receives_each_recipient(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"queued": True})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        transport = SmsTransport("https://sms.example.com/send", client=client)

        result = transport.send(make_notification(NotificationChannel.SMS, ["+15550001", "+15550002"]))

        assert result.delivered == ["+15550001", "+15550002"]
        assert bodies[0] == {"to": "+15550001", "message": "Review complete: ACME rated buy"}

    def test_sms_gateway_error(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        transport = SmsTransport("https://sms.example.com/send", client=client)

        with pytest.raises(NotificationError) as excinfo:
            transport.send(make_notification(NotificationChannel.SMS, ["+15550001"]))

        assert excinfo.value.message == "sms gateway returned HTTP 503"
        assert excinfo.value.detail == {"delivered": []}

    def test_sms_dev_mode(self):
        result = SmsTransport().send(make_notification(NotificationChannel.SMS, ["+15550001"]))

        assert result.detail == "logged (gateway not configured)"

    def test_webhook_posts_payload(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append((str(request.url), json.loads(request.content)))
            return httpx.Response(204)

        transport = WebhookTransport(client=httpx.Client(transport=httpx.MockTransport(handler)))
        notification = make_notification(
            NotificationChannel.WEBHOOK,
            ["https://hooks.example.com/a"],
            data={"ticker": "ACME"},
            execution_id="exec-1",
        )

        result = transport.send(notification)

        url, body = received[0]
        assert url == "https://hooks.example.com/a"
        assert body["title"] == "Review complete"
        assert body["data"] == {"ticker": "ACME"}
        assert body["execution_id"] == "exec-1"
        assert isinstance(body["timestamp"], int)
        assert result.delivered == ["https://hooks.example.com/a"]

    def test_webhook_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        transport = WebhookTransport(client=httpx.Client(transport=httpx.MockTransport(handler)))

        with pytest.raises(NotificationError) as excinfo:
            transport.send(make_notification(NotificationChannel.WEBHOOK, ["https://hooks.example.com/a"]))

        assert excinfo.value.message == "webhook unreachable"


# =============================================================================
# Dispatcher
# =============================================================================


class TestDispatcher:
    def test_system_channel_is_always_available(self):
        dispatcher = NotificationDispatcher()

        result = dispatcher.dispatch(make_notification(NotificationChannel.SYSTEM))

        assert result.delivered == ["system"]
        system = dispatcher.transports[NotificationChannel.SYSTEM]
        assert isinstance(system, SystemTransport)
        assert system.messages()[0].message == "ACME rated buy"

    def test_missing_recipients(self):
        dispatcher = NotificationDispatcher({NotificationChannel.EMAIL: EmailTransport()})

        with pytest.raises(NotificationError):
            dispatcher.dispatch(make_notification(NotificationChannel.EMAIL))

    def test_missing_transport(self):
        with pytest.raises(NotificationError):
            NotificationDispatcher().dispatch(make_notification(NotificationChannel.SMS, ["+15550001"]))

    def test_from_settings_wires_every_channel(self):
        settings = SimpleNamespace(
            smtp_host=None,
            smtp_port=587,
            smtp_user=None,
            smtp_password=None,
            smtp_use_tls=True,
            email_from_address=None,
            email_from_name="PanelFlow",
            sms_gateway_url=None,
            webhook_timeout=5.0,
        )

        dispatcher = NotificationDispatcher.from_settings(settings)

        assert set(dispatcher.transports) == set(NotificationChannel)

    def test_system_inbox_is_bounded(self):
        transport = SystemTransport(max_messages=2)
        for index in range(3):
            transport.send(make_notification(NotificationChannel.SYSTEM, message=f"m{index}"))

        assert [n.message for n in transport.messages()] == ["m1", "m2"]
