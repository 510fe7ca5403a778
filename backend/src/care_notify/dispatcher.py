from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Generic, Hashable, Sequence, TypeVar

from .push import PushMessage, PushSender, PushTicket, PushTransportError, chunked

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


@dataclass(frozen=True)
class ChunkFailure:
    chunk_index: int
    keys: tuple[Hashable, ...]
    error_code: str
    message: str


@dataclass
class DispatchReport(Generic[K]):
    attempted: list[K] = field(default_factory=list)
    tickets_by_key: dict[K, PushTicket] = field(default_factory=dict)
    tickets: list[PushTicket] = field(default_factory=list)
    chunk_failures: list[ChunkFailure] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return len(self.attempted)

    @property
    def accepted(self) -> list[K]:
        return [key for key in self.attempted if self.tickets_by_key[key].accepted]


class BatchDispatcher:
    """Sends keyed messages in gateway-sized chunks, isolating chunk failures."""

    def __init__(
        self,
        sender: PushSender,
        *,
        chunk_size: int = 100,
        max_workers: int = 4,
        timeout_seconds: float = 30,
    ) -> None:
        self._sender = sender
        self._chunk_size = max(1, min(chunk_size, sender.chunk_limit))
        self._max_workers = max(1, max_workers)
        self._timeout_seconds = timeout_seconds

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def dispatch(self, items: Sequence[tuple[K, PushMessage]]) -> DispatchReport[K]:
        report: DispatchReport[K] = DispatchReport()
        if not items:
            return report

        chunks = chunked(items, self._chunk_size)
        executor = ThreadPoolExecutor(max_workers=min(self._max_workers, len(chunks)), thread_name_prefix="push-chunk")
        try:
            futures = [executor.submit(self._sender.send_batch, [message for _, message in chunk]) for chunk in chunks]
            # Collected in chunk order so results stay aligned with submission order.
            for index, (chunk, future) in enumerate(zip(chunks, futures)):
                keys = tuple(key for key, _ in chunk)
                try:
                    tickets = future.result(timeout=self._timeout_seconds)
                except PushTransportError as exc:
                    self._record_failure(report, index, keys, exc.error_code, exc.message)
                    continue
                except FutureTimeoutError:
                    future.cancel()
                    self._record_failure(
                        report, index, keys, "timeout", f"chunk did not complete within {self._timeout_seconds}s"
                    )
                    continue
                except Exception as exc:  # noqa: BLE001
                    logger.exception("push chunk %d raised unexpectedly", index)
                    self._record_failure(report, index, keys, "unexpected_error", str(exc))
                    continue

                if len(tickets) != len(chunk):
                    self._record_failure(
                        report,
                        index,
                        keys,
                        "ticket_mismatch",
                        f"expected {len(chunk)} tickets, received {len(tickets)}",
                    )
                    continue

                for key, ticket in zip(keys, tickets):
                    report.attempted.append(key)
                    report.tickets_by_key[key] = ticket
                    report.tickets.append(ticket)
        finally:
            # A timed-out chunk must not hold the run open.
            executor.shutdown(wait=False, cancel_futures=True)
        return report

    @staticmethod
    def _record_failure(
        report: DispatchReport[K],
        index: int,
        keys: tuple[Hashable, ...],
        error_code: str,
        message: str,
    ) -> None:
        logger.error("push chunk %d (%d messages) failed [%s]: %s", index, len(keys), error_code, message)
        report.chunk_failures.append(ChunkFailure(chunk_index=index, keys=keys, error_code=error_code, message=message))
