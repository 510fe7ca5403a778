from __future__ import annotations

import json
import re
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Protocol, Sequence, TypeVar

from .config import EXPO_CHUNK_LIMIT, Settings
from .models import PushTicketResult, TicketStatus

_EXPO_TOKEN_RE = re.compile(r"^Expo(nent)?PushToken\[.+\]$")
_UUID_TOKEN_RE = re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE)

T = TypeVar("T")


@dataclass(frozen=True)
class PushMessage:
    to: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    sound: str | None = "default"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "to": self.to,
            "title": self.title,
            "body": self.body,
            "data": self.data,
        }
        if self.sound:
            payload["sound"] = self.sound
        return payload


@dataclass(frozen=True)
class PushTicket:
    status: TicketStatus
    id: str | None = None
    message: str | None = None
    details: dict[str, Any] | None = None

    @property
    def accepted(self) -> bool:
        return self.status == "ok"

    def to_result(self) -> PushTicketResult:
        return PushTicketResult(status=self.status, id=self.id, message=self.message, details=self.details)


class PushTransportError(Exception):
    """Raised when a whole chunk could not be submitted to the push gateway."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class PushSender(Protocol):
    @property
    def chunk_limit(self) -> int: ...

    def send_batch(self, messages: Sequence[PushMessage]) -> list[PushTicket]: ...


def is_expo_push_token(token: str) -> bool:
    normalized = token.strip()
    return bool(_EXPO_TOKEN_RE.match(normalized) or _UUID_TOKEN_RE.match(normalized))


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


class StubPushSender:
    """Local sender that never leaves the process."""

    def __init__(self, *, enabled: bool, chunk_limit: int = EXPO_CHUNK_LIMIT) -> None:
        self._enabled = enabled
        self._chunk_limit = chunk_limit
        self._lock = Lock()
        self._counter = 0
        self.sent: list[PushMessage] = []

    @property
    def chunk_limit(self) -> int:
        return self._chunk_limit

    def send_batch(self, messages: Sequence[PushMessage]) -> list[PushTicket]:
        if not self._enabled:
            raise PushTransportError("push_disabled", "Push delivery is disabled")
        if len(messages) > self._chunk_limit:
            raise PushTransportError("chunk_too_large", f"Chunk of {len(messages)} exceeds limit {self._chunk_limit}")

        tickets: list[PushTicket] = []
        with self._lock:
            for message in messages:
                if "invalid" in message.to.lower():
                    tickets.append(
                        PushTicket(
                            status="error",
                            message=f"{message.to} is not a registered push notification recipient",
                            details={"error": "DeviceNotRegistered"},
                        )
                    )
                    continue
                self._counter += 1
                self.sent.append(message)
                tickets.append(PushTicket(status="ok", id=f"stub-ticket-{self._counter:06d}"))
        return tickets


class ExpoPushSender:
    """Production sender for the Expo push service."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str = "",
        timeout_seconds: int = 30,
        chunk_limit: int = EXPO_CHUNK_LIMIT,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._base_url = stripped_url
        self._access_token = access_token.strip()
        self._timeout_seconds = timeout_seconds
        self._chunk_limit = min(chunk_limit, EXPO_CHUNK_LIMIT)

    @property
    def chunk_limit(self) -> int:
        return self._chunk_limit

    def send_batch(self, messages: Sequence[PushMessage]) -> list[PushTicket]:
        if len(messages) > self._chunk_limit:
            raise PushTransportError("chunk_too_large", f"Chunk of {len(messages)} exceeds limit {self._chunk_limit}")

        tickets: list[PushTicket | None] = [None] * len(messages)
        deliverable: list[int] = []
        for index, message in enumerate(messages):
            if is_expo_push_token(message.to):
                deliverable.append(index)
                continue
            tickets[index] = PushTicket(
                status="error",
                message=f"{message.to!r} is not a valid Expo push token",
                details={"error": "InvalidPushToken"},
            )

        if deliverable:
            response = self._post([messages[index].to_payload() for index in deliverable])
            received = self._parse_tickets(response, expected=len(deliverable))
            for index, ticket in zip(deliverable, received):
                tickets[index] = ticket

        return [ticket for ticket in tickets if ticket is not None]

    def _parse_tickets(self, response: dict[str, Any], *, expected: int) -> list[PushTicket]:
        errors = response.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) and errors and isinstance(errors[0], dict) else {}
            raise PushTransportError(
                error_code=str(first.get("code") or "push_request_error"),
                message=str(first.get("message") or "Push service rejected the request"),
            )
        data = response.get("data")
        if not isinstance(data, list) or len(data) != expected:
            raise PushTransportError(
                error_code="ticket_mismatch",
                message=f"Expected {expected} push tickets, received {len(data) if isinstance(data, list) else 0}",
            )
        tickets: list[PushTicket] = []
        for raw in data:
            if not isinstance(raw, dict):
                tickets.append(PushTicket(status="error", message="Malformed push ticket"))
                continue
            status: TicketStatus = "ok" if raw.get("status") == "ok" else "error"
            details = raw.get("details")
            tickets.append(
                PushTicket(
                    status=status,
                    id=raw.get("id") if isinstance(raw.get("id"), str) else None,
                    message=raw.get("message") if isinstance(raw.get("message"), str) else None,
                    details=details if isinstance(details, dict) else None,
                )
            )
        return tickets

    def _post(self, body: list[dict[str, Any]]) -> dict[str, Any]:
        url = f"{self._base_url}/push/send"
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise PushTransportError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise PushTransportError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise PushTransportError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except json.JSONDecodeError as exc:
            raise PushTransportError(
                error_code="invalid_response",
                message=f"Push service returned invalid JSON: {exc}",
            ) from exc


def create_push_sender(settings: Settings) -> PushSender:
    if settings.push_sender_type == "expo":
        return ExpoPushSender(
            base_url=settings.expo_api_base_url,
            access_token=settings.expo_access_token,
            timeout_seconds=settings.push_timeout_seconds,
            chunk_limit=settings.push_chunk_size,
        )
    return StubPushSender(enabled=settings.push_enabled, chunk_limit=settings.push_chunk_size)
