from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Sequence

from .dispatcher import BatchDispatcher
from .models import BroadcastResponse
from .push import PushMessage
from .store import DeliveryLogEntry, Recipient, ReminderStore, StoreUnavailableError

logger = logging.getLogger(__name__)


class NoRecipientsError(LookupError):
    """Raised when a broadcast has nobody with a registered push token to reach."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class BroadcastService:
    """Stateless fan-out of one notification to many users."""

    def __init__(self, *, store: ReminderStore, dispatcher: BatchDispatcher) -> None:
        self._store = store
        self._dispatcher = dispatcher

    def broadcast_to_all(self, *, title: str, body: str, data: dict[str, Any] | None = None) -> BroadcastResponse:
        recipients = self._store.list_recipients()
        if not recipients:
            raise NoRecipientsError("No users with push tokens found")
        return self._send(recipients, title=title, body=body, data=data or {}, log_type="all", user_ids=None)

    def broadcast_to_users(
        self,
        user_ids: Sequence[str],
        *,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> BroadcastResponse:
        recipients = self._store.list_recipients(user_ids)
        if not recipients:
            raise NoRecipientsError("No valid users found with push tokens")
        return self._send(
            recipients,
            title=title,
            body=body,
            data=data or {},
            log_type="specific",
            user_ids=tuple(recipient.user_id for recipient in recipients),
        )

    def _send(
        self,
        recipients: Sequence[Recipient],
        *,
        title: str,
        body: str,
        data: dict[str, Any],
        log_type: str,
        user_ids: tuple[str, ...] | None,
    ) -> BroadcastResponse:
        report = self._dispatcher.dispatch(
            [
                (
                    recipient.user_id,
                    PushMessage(
                        to=recipient.push_token,
                        title=title,
                        body=body,
                        data={**data, "userId": recipient.user_id},
                    ),
                )
                for recipient in recipients
            ]
        )
        sent_at = _now_utc()
        try:
            self._store.append_delivery_log(
                DeliveryLogEntry(
                    type=log_type,
                    title=title,
                    body=body,
                    data=dict(data),
                    sent_at=sent_at,
                    recipients=report.sent,
                    user_ids=user_ids,
                )
            )
        except StoreUnavailableError:
            logger.exception("failed to append %s broadcast delivery log", log_type)

        logger.info(
            "broadcast (%s) sent to %d of %d recipients, %d chunks failed",
            log_type,
            report.sent,
            len(recipients),
            len(report.chunk_failures),
        )
        return BroadcastResponse(
            success=not report.chunk_failures or report.sent > 0,
            sent=report.sent,
            recipients=len(recipients),
            failed_chunk_count=len(report.chunk_failures),
            tickets=[ticket.to_result() for ticket in report.tickets],
            message=f"Notification sent to {report.sent} users",
            timestamp=sent_at,
        )
