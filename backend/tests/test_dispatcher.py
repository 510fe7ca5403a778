from __future__ import annotations

import threading
from typing import Sequence

from care_notify.dispatcher import BatchDispatcher
from care_notify.push import PushMessage, PushTicket, PushTransportError, StubPushSender


def _items(count: int) -> list[tuple[str, PushMessage]]:
    return [
        (f"r-{index:03d}", PushMessage(to=f"ExpoPushToken[{index:03d}]", title="t", body="b"))
        for index in range(count)
    ]


class _FailingChunkSender:
    """Fails any chunk that contains one of the given tokens."""

    def __init__(self, failing_tokens: set[str], *, chunk_limit: int = 100) -> None:
        self._failing_tokens = failing_tokens
        self._chunk_limit = chunk_limit
        self.calls: list[list[str]] = []
        self._lock = threading.Lock()

    @property
    def chunk_limit(self) -> int:
        return self._chunk_limit

    def send_batch(self, messages: Sequence[PushMessage]) -> list[PushTicket]:
        with self._lock:
            self.calls.append([message.to for message in messages])
        if any(message.to in self._failing_tokens for message in messages):
            raise PushTransportError("http_502", "Bad Gateway")
        return [PushTicket(status="ok", id=f"ticket-{message.to}") for message in messages]


class _BlockingSender:
    def __init__(self, release: threading.Event) -> None:
        self._release = release

    @property
    def chunk_limit(self) -> int:
        return 100

    def send_batch(self, messages: Sequence[PushMessage]) -> list[PushTicket]:
        self._release.wait(timeout=5)
        return [PushTicket(status="ok", id="late") for _ in messages]


def test_dispatch_chunks_and_keys_outcomes() -> None:
    sender = StubPushSender(enabled=True, chunk_limit=100)
    dispatcher = BatchDispatcher(sender, chunk_size=100, max_workers=3)

    report = dispatcher.dispatch(_items(250))

    assert report.sent == 250
    assert report.attempted == [f"r-{index:03d}" for index in range(250)]
    assert report.chunk_failures == []
    assert len(report.tickets) == 250
    assert report.tickets_by_key["r-000"].accepted
    assert len(sender.sent) == 250


def test_dispatch_isolates_failing_chunk() -> None:
    sender = _FailingChunkSender({"ExpoPushToken[005]"})
    dispatcher = BatchDispatcher(sender, chunk_size=4, max_workers=2)

    report = dispatcher.dispatch(_items(10))

    assert len(sender.calls) == 3
    assert len(report.chunk_failures) == 1
    failure = report.chunk_failures[0]
    assert failure.chunk_index == 1
    assert failure.keys == ("r-004", "r-005", "r-006", "r-007")
    assert failure.error_code == "http_502"
    assert report.attempted == ["r-000", "r-001", "r-002", "r-003", "r-008", "r-009"]
    assert "r-005" not in report.tickets_by_key


def test_dispatch_chunk_size_is_capped_by_sender_limit() -> None:
    sender = _FailingChunkSender(set(), chunk_limit=3)
    dispatcher = BatchDispatcher(sender, chunk_size=100)

    report = dispatcher.dispatch(_items(7))

    assert dispatcher.chunk_size == 3
    assert [len(call) for call in sender.calls] == [3, 3, 1]
    assert report.sent == 7


def test_dispatch_accepted_excludes_error_tickets() -> None:
    sender = StubPushSender(enabled=True)
    items = _items(2) + [("r-bad", PushMessage(to="ExpoPushToken[invalid]", title="t", body="b"))]

    report = BatchDispatcher(sender).dispatch(items)

    assert report.attempted == ["r-000", "r-001", "r-bad"]
    assert report.accepted == ["r-000", "r-001"]


def test_dispatch_timeout_counts_as_chunk_failure() -> None:
    release = threading.Event()
    dispatcher = BatchDispatcher(_BlockingSender(release), timeout_seconds=0.05)

    try:
        report = dispatcher.dispatch(_items(2))
    finally:
        release.set()

    assert report.sent == 0
    assert [failure.error_code for failure in report.chunk_failures] == ["timeout"]


def test_dispatch_disabled_sender_fails_every_chunk() -> None:
    dispatcher = BatchDispatcher(StubPushSender(enabled=False), chunk_size=2)

    report = dispatcher.dispatch(_items(5))

    assert report.sent == 0
    assert [failure.chunk_index for failure in report.chunk_failures] == [0, 1, 2]
    assert {failure.error_code for failure in report.chunk_failures} == {"push_disabled"}


def test_dispatch_empty_input() -> None:
    report = BatchDispatcher(StubPushSender(enabled=True)).dispatch([])

    assert report.sent == 0
    assert report.tickets == []
