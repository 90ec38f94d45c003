"""Tests for the HTTP mail client."""

import json

import httpx
import pytest

from lawmakers_auth.service.email import EmailService


def _service(handler, **kwargs):
    return EmailService(
        api_key="re_test_key",
        app_origin="https://app.example.org/",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


async def test_verification_email_posts_to_provider():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "msg_1"})

    service = _service(handler)
    assert await service.send_verification_email("alice@example.com", "tok.en+/=") is True
    assert captured["url"] == "https://api.resend.com/emails"
    assert captured["auth"] == "Bearer re_test_key"
    body = captured["body"]
    assert body["to"] == ["alice@example.com"]
    assert body["from"] == "Lawmakers <onboarding@resend.dev>"
    assert "https://app.example.org/api/verify?token=tok.en%2B%2F%3D" in body["text"]
    assert "https://app.example.org/api/verify?token=tok.en%2B%2F%3D" in body["html"]


async def test_welcome_email_links_to_login():
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "msg_2"})

    assert await _service(handler).send_welcome_email("alice@example.com") is True
    assert "https://app.example.org/login" in captured["body"]["text"]


@pytest.mark.parametrize("status", [400, 401, 422, 500, 503])
async def test_provider_errors_return_false(status):
    service = _service(lambda request: httpx.Response(status, text="nope"))
    assert await service.send_verification_email("alice@example.com", "token") is False


async def test_timeout_returns_false():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    assert await _service(handler).send_verification_email("alice@example.com", "token") is False


async def test_connect_error_returns_false():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert await _service(handler).send_welcome_email("alice@example.com") is False


async def test_dev_mode_logs_instead_of_sending():
    def handler(request):
        raise AssertionError("no request expected without an API key")

    service = EmailService(api_key=None, transport=httpx.MockTransport(handler))
    assert service.is_configured is False
    assert await service.send_verification_email("alice@example.com", "token") is True


def test_verify_url_uses_app_origin():
    service = EmailService(app_origin="http://localhost:5173/")
    assert service.verify_url("abc") == "http://localhost:5173/api/verify?token=abc"
