# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound email transports.

A transport delivers one rendered email and returns the provider's message
id, or raises. The dispatcher only distinguishes two failure kinds:

- :class:`TransportRateLimitError`: the provider throttled the request; the
  job becomes ``rate_limited`` and is released later.
- :class:`TransportError` (and any other exception): the job becomes
  ``failed`` with the message recorded verbatim.

Two implementations are provided:

- :class:`HttpApiTransport`: JSON email API in the style of Resend
  (``POST {api_url}/emails`` with a bearer key), using aiohttp.
- :class:`SmtpTransport`: plain SMTP via aiosmtplib with a reusable
  connection.

Example:
    Sending through the HTTP API::

        transport = HttpApiTransport(api_key="re_...", from_address="School <noreply@school.org>")
        provider_id = await transport.send(["parent@example.com"], "Hello", "<p>Hi</p>")
        await transport.close()
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any

import aiohttp
import aiosmtplib

from .logger import get_logger
from .models import EmailQueueError

DEFAULT_API_URL = "https://api.resend.com"
DEFAULT_TIMEOUT = 30.0

RATE_LIMIT_PATTERNS = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "too many messages",
    "throttl",
)


class TransportError(EmailQueueError):
    """The transport could not deliver the message."""

    code = "transport_error"

    def __init__(self, message: str = "Email transport failed", *, status: int | None = None):
        super().__init__(message)
        self.status = status


class TransportRateLimitError(TransportError):
    """The provider rejected the request because of its rate limit."""

    code = "rate_limited"


class TransportConfigurationError(TransportError):
    """The transport is missing settings it needs to send anything."""

    code = "transport_configuration"


def is_rate_limit_message(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in RATE_LIMIT_PATTERNS)


def classify_send_error(exc: Exception) -> TransportError:
    """Wrap an arbitrary send exception into the transport error taxonomy.

    HTTP 429 and messages that mention rate limiting or throttling (this
    covers SMTP 421/45x replies that say so) become
    :class:`TransportRateLimitError`; everything else becomes a plain
    :class:`TransportError` carrying the original message.
    """
    if isinstance(exc, TransportError):
        return exc
    status = getattr(exc, "status", None)
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        smtp_code = exc.code
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) and not str(exc):
        message = "send timed out"
    if status == 429 or is_rate_limit_message(message):
        return TransportRateLimitError(message, status=status or smtp_code)
    return TransportError(message, status=status or smtp_code)


class EmailTransport(ABC):
    """Abstract outbound transport."""

    @abstractmethod
    async def send(
        self,
        to: Sequence[str],
        subject: str,
        html: str,
        from_addr: str | None = None,
    ) -> str:
        """Deliver one email to every address in ``to``.

        Delivery is all-or-nothing from the queue's point of view: the call
        either returns a provider id or raises.

        Returns:
            The provider's message id.

        Raises:
            TransportRateLimitError: The provider throttled the request.
            TransportError: Any other delivery failure.
        """

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""


class HttpApiTransport(EmailTransport):
    """Transport for JSON email APIs in the Resend style.

    Attributes:
        api_url: Base URL of the provider API.
        from_address: Default ``from`` header.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        from_address: str | None,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ):
        """Initialize the HTTP transport.

        Args:
            api_key: Bearer key for the provider.
            from_address: Default sender used when ``send`` gets none.
            api_url: Provider base URL; ``/emails`` is appended.
            timeout: Total request timeout in seconds.
            session: Optional session to reuse; closed by :meth:`close` only
                if the transport created it.
        """
        self.api_key = api_key
        self.from_address = from_address
        self.api_url = api_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self.logger = get_logger("HttpApiTransport")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def send(
        self,
        to: Sequence[str],
        subject: str,
        html: str,
        from_addr: str | None = None,
    ) -> str:
        if not self.api_key:
            raise TransportConfigurationError("Email API key is not configured")
        sender = from_addr or self.from_address
        if not sender:
            raise TransportConfigurationError("Sender address is not configured")
        recipients = list(to)
        if not recipients:
            raise TransportError("No recipients")

        session = await self._get_session()
        payload = {"from": sender, "to": recipients, "subject": subject, "html": html}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with session.post(f"{self.api_url}/emails", json=payload, headers=headers) as resp:
                data: dict[str, Any] = {}
                try:
                    data = await resp.json(content_type=None) or {}
                except (aiohttp.ContentTypeError, ValueError):
                    data = {"message": (await resp.text())[:500]}
                if not isinstance(data, dict):
                    data = {}
                if resp.status == 429:
                    raise TransportRateLimitError(
                        str(data.get("message") or "Too many requests"), status=429
                    )
                if resp.status >= 400:
                    detail = data.get("message") or data.get("error") or resp.reason or "request failed"
                    message = f"Email API error ({resp.status}): {detail}"
                    if is_rate_limit_message(message):
                        raise TransportRateLimitError(message, status=resp.status)
                    raise TransportError(message, status=resp.status)
        except aiohttp.ClientError as exc:
            raise classify_send_error(exc) from exc
        except asyncio.TimeoutError as exc:
            raise TransportError("Email API request timed out") from exc

        provider_id = data.get("id")
        if not provider_id:
            raise TransportError("Email API response did not include a message id")
        self.logger.debug("Email API accepted message %s for %d recipient(s)", provider_id, len(recipients))
        return str(provider_id)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


class SmtpTransport(EmailTransport):
    """SMTP transport that keeps one authenticated connection alive.

    The connection is checked with ``NOOP`` before reuse and replaced after
    ``ttl`` seconds. Calls are made one at a time by the dispatcher, so a
    single connection is enough.
    """

    def __init__(
        self,
        *,
        host: str | None,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        from_address: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        ttl: int = 300,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = bool(use_tls)
        self.from_address = from_address
        self.timeout = float(timeout)
        self.ttl = ttl
        self._smtp: aiosmtplib.SMTP | None = None
        self._connected_at = 0.0
        self._lock = asyncio.Lock()
        self.logger = get_logger("SmtpTransport")

    async def _connect(self) -> aiosmtplib.SMTP:
        # Port 465 uses implicit TLS, any other port upgrades with STARTTLS.
        if self.use_tls and self.port == 465:
            smtp = aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=True, start_tls=False, timeout=self.timeout)
        elif self.use_tls:
            smtp = aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=False, start_tls=True, timeout=self.timeout)
        else:
            smtp = aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=False, start_tls=False, timeout=self.timeout)
        await smtp.connect()
        if self.user and self.password:
            await smtp.login(self.user, self.password)
        self._connected_at = time.monotonic()
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def _connection(self) -> aiosmtplib.SMTP:
        smtp = self._smtp
        if smtp is not None:
            expired = time.monotonic() - self._connected_at > self.ttl
            if not expired and await self._is_alive(smtp):
                return smtp
            await self._discard()
        self._smtp = await self._connect()
        return self._smtp

    async def _discard(self) -> None:
        smtp, self._smtp = self._smtp, None
        if smtp is None:
            return
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            self.logger.debug("Ignoring error while closing SMTP connection")

    @staticmethod
    def build_message(to: Sequence[str], subject: str, html: str, sender: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = sender
        msg["To"] = ", ".join(to)
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content(html, subtype="html")
        return msg

    async def send(
        self,
        to: Sequence[str],
        subject: str,
        html: str,
        from_addr: str | None = None,
    ) -> str:
        if not self.host:
            raise TransportConfigurationError("SMTP host is not configured")
        sender = from_addr or self.from_address
        if not sender:
            raise TransportConfigurationError("Sender address is not configured")
        recipients = list(to)
        if not recipients:
            raise TransportError("No recipients")

        msg = self.build_message(recipients, subject, html, sender)
        async with self._lock:
            try:
                smtp = await self._connection()
                await asyncio.wait_for(smtp.send_message(msg), timeout=self.timeout)
            except Exception as exc:
                # A connection that failed mid-send is not reused.
                await self._discard()
                raise classify_send_error(exc) from exc
        return str(msg["Message-ID"])

    async def close(self) -> None:
        async with self._lock:
            await self._discard()


def create_transport(kind: str, **options: Any) -> EmailTransport:
    """Build a transport from configuration.

    Args:
        kind: ``"http"`` (alias ``"resend"``) or ``"smtp"``.
        **options: Keyword arguments for the transport constructor; unknown
            keys are ignored so a flat settings dict can be passed through.

    Raises:
        ValueError: If ``kind`` is unknown.
    """
    kind = (kind or "http").lower()
    if kind in ("http", "resend", "api"):
        return HttpApiTransport(
            api_key=options.get("api_key"),
            from_address=options.get("from_address"),
            api_url=options.get("api_url") or DEFAULT_API_URL,
            timeout=float(options.get("timeout") or DEFAULT_TIMEOUT),
        )
    if kind == "smtp":
        return SmtpTransport(
            host=options.get("smtp_host"),
            port=int(options.get("smtp_port") or 587),
            user=options.get("smtp_user"),
            password=options.get("smtp_password"),
            use_tls=bool(options.get("smtp_use_tls", True)),
            from_address=options.get("from_address"),
            timeout=float(options.get("timeout") or DEFAULT_TIMEOUT),
        )
    raise ValueError(f"Unknown transport kind: '{kind}'. Supported: http, smtp")
