from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Protocol

from .backoff import is_retryable
from .config import Settings

logger = logging.getLogger(__name__)

DISPATCH_ERROR_CODE = "provider_dispatch_error"


@dataclass(frozen=True)
class ProviderSendRequest:
    reminder_id: str
    tenant_id: str
    channel: str
    recipient: str
    message: str
    idempotency_key: str


@dataclass(frozen=True)
class ProviderResult:
    ok: bool
    at: datetime
    provider_id: str | None = None
    code: str | None = None
    message: str | None = None
    retryable: bool = False

    @classmethod
    def sent(cls, provider_id: str | None, *, at: datetime | None = None) -> "ProviderResult":
        return cls(ok=True, at=at or datetime.now(timezone.utc), provider_id=provider_id)

    @classmethod
    def failed(cls, code: str, message: str, *, at: datetime | None = None) -> "ProviderResult":
        return cls(
            ok=False,
            at=at or datetime.now(timezone.utc),
            code=code,
            message=message,
            retryable=is_retryable(code),
        )


class ChannelTransport(Protocol):
    def send(self, payload: ProviderSendRequest) -> ProviderResult: ...


class StubChannelTransport:
    """Local transport: accepts everything unless disabled or the recipient asks to fail."""

    def __init__(self, *, enabled: bool = True, channel: str = "email") -> None:
        self._enabled = enabled
        self._channel = channel

    def send(self, payload: ProviderSendRequest) -> ProviderResult:
        attempted_at = datetime.now(timezone.utc)
        if not self._enabled:
            return ProviderResult.failed(
                "transport_disabled",
                f"{self._channel} delivery is disabled",
                at=attempted_at,
            )
        if "fail" in payload.recipient.lower():
            return ProviderResult.failed(
                "stub_delivery_failed",
                "Stub transport forced failure for recipient",
                at=attempted_at,
            )
        provider_id = f"stub-{payload.channel}-{payload.reminder_id}-{int(attempted_at.timestamp())}"
        return ProviderResult.sent(provider_id, at=attempted_at)


class _TransportHttpError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class HttpChannelTransport:
    """Delivers one channel through a JSON messaging gateway."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 10,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def send(self, payload: ProviderSendRequest) -> ProviderResult:
        attempted_at = datetime.now(timezone.utc)
        body = {
            "channel": payload.channel,
            "recipient": payload.recipient,
            "message": payload.message,
            "idempotency_key": payload.idempotency_key,
        }
        try:
            response_data = self._post(body)
        except _TransportHttpError as exc:
            masked = mask_contact_target(payload.recipient, payload.channel)
            return ProviderResult.failed(exc.code, f"{exc.message} (recipient: {masked})", at=attempted_at)
        message_id = response_data.get("message_id") if isinstance(response_data, dict) else None
        return ProviderResult.sent(str(message_id) if message_id else None, at=attempted_at)

    def _post(self, body: dict[str, str]) -> dict[str, object]:
        url = f"{self._base_url}/v1/messages/send"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            if exc.code in (400, 422):
                # Gateway rejected the payload; resending the same recipient cannot succeed.
                code = "invalid_recipient"
            elif exc.code == 429:
                code = "rate_limited"
            elif exc.code >= 500:
                code = "provider_unavailable"
            else:
                code = f"http_{exc.code}"
            raise _TransportHttpError(code, f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise _TransportHttpError("timeout", f"Request timed out: {exc.reason}") from exc
            raise _TransportHttpError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _TransportHttpError("timeout", f"Request timed out: {exc}") from exc
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return {}


class ProviderRouter:
    """Sends through the transport registered for a channel and normalizes the result."""

    def __init__(self, transports: Mapping[str, ChannelTransport]) -> None:
        self._transports = {channel.strip().lower(): transport for channel, transport in transports.items()}

    @property
    def channels(self) -> tuple[str, ...]:
        return tuple(sorted(self._transports))

    def send(self, channel: str, payload: ProviderSendRequest) -> ProviderResult:
        transport = self._transports.get(channel.strip().lower())
        if transport is None:
            return ProviderResult.failed("unknown_channel", f"No transport registered for channel '{channel}'")
        try:
            return transport.send(payload)
        except Exception as exc:
            logger.exception("transport crashed reminder_id=%s channel=%s", payload.reminder_id, channel)
            return ProviderResult.failed(DISPATCH_ERROR_CODE, str(exc) or exc.__class__.__name__)


def build_router(settings: Settings) -> ProviderRouter:
    transports: dict[str, ChannelTransport] = {}
    for channel in settings.transport_channels:
        if settings.transport_sender_type == "http":
            transports[channel] = HttpChannelTransport(
                base_url=settings.transport_api_base_url,
                api_key=settings.transport_api_key,
                timeout_seconds=settings.transport_timeout_seconds,
            )
        else:
            transports[channel] = StubChannelTransport(enabled=settings.transport_enabled, channel=channel)
    return ProviderRouter(transports)


def mask_contact_target(contact_target: str, channel: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel in {"sms", "chat"}:
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
