from __future__ import annotations

import pytest

from care_notify.broadcast import BroadcastService, NoRecipientsError
from care_notify.dispatcher import BatchDispatcher
from care_notify.push import StubPushSender
from care_notify.store import InMemoryReminderStore


def _service(store: InMemoryReminderStore, sender: StubPushSender, *, chunk_size: int = 100) -> BroadcastService:
    return BroadcastService(store=store, dispatcher=BatchDispatcher(sender, chunk_size=chunk_size))


def _seed_tokens(store: InMemoryReminderStore, count: int) -> None:
    for index in range(count):
        store.upsert_push_token(f"user-{index:03d}", f"ExpoPushToken[{index:03d}]")


def test_broadcast_to_all_fans_out_in_chunks_and_logs() -> None:
    store = InMemoryReminderStore()
    _seed_tokens(store, 5)
    store.upsert_push_token("user-empty", "")
    sender = StubPushSender(enabled=True)

    response = _service(store, sender, chunk_size=2).broadcast_to_all(
        title="Spring is here", body="Check your plants", data={"screen": "home"}
    )

    assert response.success is True
    assert response.sent == 5
    assert response.recipients == 5
    assert len(response.tickets) == 5
    assert {message.to for message in sender.sent} == {f"ExpoPushToken[{index:03d}]" for index in range(5)}
    assert {message.to: message.data for message in sender.sent}["ExpoPushToken[003]"] == {
        "screen": "home",
        "userId": "user-003",
    }

    logs = store.list_delivery_logs()
    assert len(logs) == 1
    assert logs[0].type == "all"
    assert logs[0].recipients == 5
    assert logs[0].data == {"screen": "home"}
    assert logs[0].user_ids is None


def test_broadcast_to_users_only_reaches_registered_ids() -> None:
    store = InMemoryReminderStore()
    _seed_tokens(store, 3)
    sender = StubPushSender(enabled=True)

    response = _service(store, sender).broadcast_to_users(
        ["user-001", "user-999"], title="Hello", body="Just you"
    )

    assert response.sent == 1
    assert [message.to for message in sender.sent] == ["ExpoPushToken[001]"]
    assert sender.sent[0].data == {"userId": "user-001"}
    logs = store.list_delivery_logs()
    assert logs[0].type == "specific"
    assert logs[0].user_ids == ("user-001",)


def test_broadcast_without_recipients_raises() -> None:
    store = InMemoryReminderStore()
    service = _service(store, StubPushSender(enabled=True))

    with pytest.raises(NoRecipientsError):
        service.broadcast_to_all(title="t", body="b")
    with pytest.raises(NoRecipientsError):
        service.broadcast_to_users(["ghost"], title="t", body="b")
    assert store.list_delivery_logs() == []


def test_broadcast_with_disabled_transport_reports_failed_chunks() -> None:
    store = InMemoryReminderStore()
    _seed_tokens(store, 3)

    response = _service(store, StubPushSender(enabled=False), chunk_size=2).broadcast_to_all(title="t", body="b")

    assert response.success is False
    assert response.sent == 0
    assert response.failed_chunk_count == 2
