#!/usr/bin/env python3
"""
Tests for outbound WhatsApp delivery through the Twilio Messages API
"""
import asyncio
import base64
from urllib.parse import parse_qs

import httpx
import pytest

from ragbot.clients import twilio_client
from ragbot.clients.twilio_client import FakeTwilioClient, TwilioClient, create_twilio_client

REAL_ASYNC_CLIENT = httpx.AsyncClient


@pytest.fixture
def twilio_api(monkeypatch):
    """Route the client's HTTP calls to a handler; returns the captured requests."""
    captured = {"requests": [], "handler": None}

    def handler(request):
        captured["requests"].append(request)
        return captured["handler"](request)

    transport = httpx.MockTransport(handler)
    monkeypatch.setattr(
        twilio_client.httpx, "AsyncClient",
        lambda **kwargs: REAL_ASYNC_CLIENT(transport=transport, **kwargs),
    )
    return captured


def make_client(**kwargs):
    defaults = dict(account_sid="AC123", auth_token="secret", from_number="whatsapp:+15550000")
    defaults.update(kwargs)
    return TwilioClient(**defaults)


def test_send_posts_form_with_basic_auth(twilio_api):
    twilio_api["handler"] = lambda request: httpx.Response(201, json={"sid": "SM1", "status": "queued"})

    result = asyncio.run(make_client().send_whatsapp_message("whatsapp:+15550001", "Hello"))

    assert result.success is True
    assert result.message_sid == "SM1"
    request = twilio_api["requests"][0]
    assert request.method == "POST"
    assert str(request.url) == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    expected_auth = base64.b64encode(b"AC123:secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected_auth}"
    form = parse_qs(request.content.decode())
    assert form == {"To": ["whatsapp:+15550001"], "Body": ["Hello"], "From": ["whatsapp:+15550000"]}


def test_messaging_service_is_preferred_over_from_number(twilio_api):
    twilio_api["handler"] = lambda request: httpx.Response(201, json={"sid": "SM2"})
    client = make_client(messaging_service_sid="MG999")

    asyncio.run(client.send_whatsapp_message("whatsapp:+15550001", "Hi"))

    form = parse_qs(twilio_api["requests"][0].content.decode())
    assert form["MessagingServiceSid"] == ["MG999"]
    assert "From" not in form


def test_api_error_message_is_reported(twilio_api):
    twilio_api["handler"] = lambda request: httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

    result = asyncio.run(make_client().send_whatsapp_message("whatsapp:+1", "Hi"))

    assert result.success is False
    assert result.error == "Invalid 'To' Phone Number"


def test_non_json_error_falls_back_to_text(twilio_api):
    twilio_api["handler"] = lambda request: httpx.Response(503, text="Service Unavailable")

    result = asyncio.run(make_client().send_whatsapp_message("whatsapp:+1", "Hi"))

    assert result.success is False
    assert result.error == "Service Unavailable"


def test_transport_error_is_reported(twilio_api):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    twilio_api["handler"] = handler

    result = asyncio.run(make_client().send_whatsapp_message("whatsapp:+1", "Hi"))

    assert result.success is False
    assert "connection refused" in result.error


def test_missing_sender_fails_without_request(twilio_api):
    client = make_client(from_number=None)

    result = asyncio.run(client.send_whatsapp_message("whatsapp:+1", "Hi"))

    assert result.success is False
    assert result.error == "No sender configured"
    assert twilio_api["requests"] == []


def test_fake_client_records_messages():
    fake = FakeTwilioClient()
    result = asyncio.run(fake.send_whatsapp_message("whatsapp:+1", "Hi"))

    assert result.success is True
    assert result.message_sid.startswith("SM")
    assert fake.sent == [{"to": "whatsapp:+1", "body": "Hi", "sid": result.message_sid}]

    failing = FakeTwilioClient(fail_with="boom")
    assert asyncio.run(failing.send_whatsapp_message("whatsapp:+1", "Hi")).error == "boom"


def test_create_twilio_client_honours_fake_mode():
    assert isinstance(create_twilio_client(use_fake_clients=True), FakeTwilioClient)
    assert isinstance(create_twilio_client(use_fake_clients=False), TwilioClient)
