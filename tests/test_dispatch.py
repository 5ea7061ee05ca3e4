from __future__ import annotations

from datetime import datetime

import pytest
import resend
from resend.http_client_requests import RequestsClient

from musicscheduler import dispatch
from musicscheduler.dispatch import (
    DispatchError,
    DispatchPolicy,
    InvitationMessage,
    ResendDispatcher,
    SendingRestricted,
    deliver_invitation,
    render_invitation_text,
)

from conftest import RecordingDispatcher


@pytest.fixture()
def message():
    return InvitationMessage(
        to="robin@example.org",
        recipient_name="Robin Reyes",
        church_name="Grace Chapel",
        inviter_name="Dana Director",
        temporary_password="Kx7pQ2mZ",
        invite_link="http://localhost:8000/invitations/abc",
        expires_at=datetime(2025, 6, 8, 12, 0),
    )


def test_invitation_text_carries_credentials(message):
    text = render_invitation_text(message)
    assert "Username: robin@example.org" in text
    assert "Temporary Password: Kx7pQ2mZ" in text
    assert "http://localhost:8000/invitations/abc" in text
    assert "expires on 2025-06-08" in text


def test_resend_dispatcher_sends_plain_text(monkeypatch, message):
    captured = {}

    def fake_send(params):
        captured.update(params)
        return {"id": "email_123"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    sender = ResendDispatcher(api_key="re_test", sender="Scheduler <noreply@example.org>")

    assert sender.send_invitation(message) == "email_123"
    assert captured["to"] == ["robin@example.org"]
    assert captured["from"] == "Scheduler <noreply@example.org>"
    assert "Grace Chapel" in captured["subject"]


def test_resend_requests_give_up_at_the_dispatch_timeout(monkeypatch, message):
    monkeypatch.setattr(resend, "default_http_client", resend.default_http_client)
    clients = []

    def fake_send(params):
        clients.append(resend.default_http_client)
        return {"id": "email_456"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    sender = ResendDispatcher(api_key="re_test", sender="noreply@example.org", timeout=2.5)

    sender.send_invitation(message)

    assert isinstance(clients[0], RequestsClient)
    assert clients[0]._timeout == 2.5


@pytest.mark.parametrize(
    "detail, expected",
    [
        ("You can only send testing emails to your own email address", SendingRestricted),
        ("The example.org domain is not verified", SendingRestricted),
        ("Internal server error", DispatchError),
    ],
)
def test_resend_errors_are_classified(monkeypatch, message, detail, expected):
    def fake_send(params):
        raise RuntimeError(detail)

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    sender = ResendDispatcher(api_key="re_test", sender="noreply@example.org")
    with pytest.raises(expected):
        sender.send_invitation(message)


def test_missing_api_key_counts_as_restriction(message):
    sender = ResendDispatcher(api_key="", sender="noreply@example.org")
    with pytest.raises(SendingRestricted):
        sender.send_invitation(message)
    receipt = deliver_invitation(
        sender, message, policy=DispatchPolicy.SIMULATE_ON_RESTRICTION
    )
    assert receipt.simulated and not receipt.delivered


def test_deliver_returns_provider_id(message):
    receipt = deliver_invitation(RecordingDispatcher(), message)
    assert receipt.delivered
    assert receipt.message_id == "msg-1"


def test_policy_accepts_plain_strings(message):
    restricted = RecordingDispatcher(fail_with=SendingRestricted("sandbox"))
    receipt = deliver_invitation(restricted, message, policy="simulate-on-restriction")
    assert receipt.simulated
    with pytest.raises(SendingRestricted):
        deliver_invitation(restricted, message, policy="strict")


def test_default_dispatcher_uses_settings():
    sender = dispatch.default_dispatcher()
    assert isinstance(sender, ResendDispatcher)
    assert sender.sender == dispatch.settings.email_from
