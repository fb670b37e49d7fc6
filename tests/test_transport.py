import asyncio

import aiosmtplib
import pytest

from async_email_queue.transport import (
    HttpApiTransport,
    SmtpTransport,
    TransportConfigurationError,
    TransportError,
    TransportRateLimitError,
    classify_send_error,
    create_transport,
    is_rate_limit_message,
)


class DummyResponse:
    def __init__(self, status, data=None, text="", reason="Error"):
        self.status = status
        self._data = data
        self._text = text
        self.reason = reason

    async def json(self, content_type=None):
        if self._data is None:
            raise ValueError("not json")
        return self._data

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class DummySession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.closed = False
        self.requests = []

    def post(self, url, json=None, headers=None):
        self.requests.append({"url": url, "json": json, "headers": headers})
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


def make_transport(session, **kwargs):
    options = {"api_key": "re_test", "from_address": "School <noreply@school.org>", "session": session}
    options.update(kwargs)
    return HttpApiTransport(**options)


def test_rate_limit_message_detection():
    assert is_rate_limit_message("Rate limit exceeded")
    assert is_rate_limit_message("421 Too many messages, slow down")
    assert is_rate_limit_message("Request throttled")
    assert not is_rate_limit_message("550 mailbox unavailable")


def test_classify_send_error():
    limited = classify_send_error(RuntimeError("too many requests"))
    assert isinstance(limited, TransportRateLimitError)

    plain = classify_send_error(RuntimeError("connection refused"))
    assert type(plain) is TransportError
    assert str(plain) == "connection refused"

    timeout = classify_send_error(asyncio.TimeoutError())
    assert str(timeout) == "send timed out"

    original = TransportError("kept")
    assert classify_send_error(original) is original

    smtp = classify_send_error(aiosmtplib.SMTPResponseException(550, "mailbox unavailable"))
    assert smtp.status == 550
    assert not isinstance(smtp, TransportRateLimitError)


@pytest.mark.asyncio
async def test_http_transport_success_posts_payload():
    session = DummySession(DummyResponse(200, {"id": "prov-1"}))
    transport = make_transport(session, api_url="https://mail.example.com/")
    provider_id = await transport.send(["a@x.org", "b@x.org"], "Hello", "<p>Hi</p>")
    assert provider_id == "prov-1"
    request = session.requests[0]
    assert request["url"] == "https://mail.example.com/emails"
    assert request["json"] == {
        "from": "School <noreply@school.org>",
        "to": ["a@x.org", "b@x.org"],
        "subject": "Hello",
        "html": "<p>Hi</p>",
    }
    assert request["headers"] == {"Authorization": "Bearer re_test"}


@pytest.mark.asyncio
async def test_http_transport_uses_explicit_sender():
    session = DummySession(DummyResponse(200, {"id": "prov-2"}))
    await make_transport(session).send(["a@x.org"], "S", "B", "Office <office@school.org>")
    assert session.requests[0]["json"]["from"] == "Office <office@school.org>"


@pytest.mark.asyncio
async def test_http_transport_maps_429_to_rate_limit():
    session = DummySession(DummyResponse(429, {"message": "Too many requests"}))
    with pytest.raises(TransportRateLimitError) as exc:
        await make_transport(session).send(["a@x.org"], "S", "B")
    assert exc.value.status == 429


@pytest.mark.asyncio
async def test_http_transport_maps_rate_limit_messages_on_other_statuses():
    session = DummySession(DummyResponse(403, {"message": "Daily rate limit reached"}))
    with pytest.raises(TransportRateLimitError):
        await make_transport(session).send(["a@x.org"], "S", "B")


@pytest.mark.asyncio
async def test_http_transport_reports_api_errors():
    session = DummySession(DummyResponse(422, {"message": "Invalid `to` field"}))
    with pytest.raises(TransportError) as exc:
        await make_transport(session).send(["not-an-address"], "S", "B")
    assert not isinstance(exc.value, TransportRateLimitError)
    assert str(exc.value) == "Email API error (422): Invalid `to` field"
    assert exc.value.status == 422


@pytest.mark.asyncio
async def test_http_transport_handles_non_json_bodies():
    session = DummySession(DummyResponse(502, None, text="Bad gateway", reason="Bad Gateway"))
    with pytest.raises(TransportError, match="Bad gateway"):
        await make_transport(session).send(["a@x.org"], "S", "B")


@pytest.mark.asyncio
async def test_http_transport_requires_message_id():
    session = DummySession(DummyResponse(200, {}))
    with pytest.raises(TransportError, match="message id"):
        await make_transport(session).send(["a@x.org"], "S", "B")


@pytest.mark.asyncio
async def test_http_transport_configuration_errors():
    session = DummySession(DummyResponse(200, {"id": "x"}))
    with pytest.raises(TransportConfigurationError):
        await make_transport(session, api_key=None).send(["a@x.org"], "S", "B")
    with pytest.raises(TransportConfigurationError):
        await make_transport(session, from_address=None).send(["a@x.org"], "S", "B")
    with pytest.raises(TransportError):
        await make_transport(session).send([], "S", "B")
    assert session.requests == []


@pytest.mark.asyncio
async def test_http_transport_does_not_close_borrowed_session():
    session = DummySession(DummyResponse(200, {"id": "x"}))
    transport = make_transport(session)
    await transport.close()
    assert session.closed is False


def test_smtp_build_message():
    message = SmtpTransport.build_message(["a@x.org", "b@x.org"], "Hello", "<p>Hi</p>", "noreply@school.org")
    assert message["To"] == "a@x.org, b@x.org"
    assert message["From"] == "noreply@school.org"
    assert message["Subject"] == "Hello"
    assert message["Message-ID"]
    assert message.get_content_type() == "text/html"


@pytest.mark.asyncio
async def test_smtp_transport_configuration_errors():
    with pytest.raises(TransportConfigurationError):
        await SmtpTransport(host=None, from_address="noreply@school.org").send(["a@x.org"], "S", "B")
    with pytest.raises(TransportConfigurationError):
        await SmtpTransport(host="smtp.example.com", from_address=None).send(["a@x.org"], "S", "B")


def test_create_transport():
    assert isinstance(create_transport("http", api_key="k", from_address="a@x.org"), HttpApiTransport)
    assert isinstance(create_transport("resend"), HttpApiTransport)
    smtp = create_transport("smtp", smtp_host="smtp.example.com", smtp_port="2525", from_address="a@x.org")
    assert isinstance(smtp, SmtpTransport)
    with pytest.raises(ValueError):
        create_transport("carrier-pigeon")
