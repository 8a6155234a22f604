"""
SPARQL Gateway - Notification emitter.
Fire-and-forget completion and failure events. Subscribers run on a small
worker pool; a failing subscriber is logged and never reaches the caller, so
a notification can never undo the work it reports.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field

import httpx

from ._utils import now_iso

logger = logging.getLogger("sparql_gateway.notify")

__all__ = [
    "Notification",
    "NotificationEmitter",
    "UPDATE_QUERY_TRIPLESTORE",
    "UPDATE_QUERY_FAILURE",
    "SYNC_FILE_TRIPLESTORE",
    "SYNC_FILE_FAILURE",
    "log_subscriber",
    "webhook_subscriber",
]

UPDATE_QUERY_TRIPLESTORE = "UPDATE_QUERY_TRIPLESTORE"
UPDATE_QUERY_FAILURE = "UPDATE_QUERY_FAILURE"
SYNC_FILE_TRIPLESTORE = "SYNC_FILE_TRIPLESTORE"
SYNC_FILE_FAILURE = "SYNC_FILE_FAILURE"


@dataclass(frozen=True)
class Notification:
    title: str
    type: str
    correlation_id: str
    timestamp: str = field(default_factory=now_iso)
    detail: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    def headers(self) -> dict[str, str]:
        return {
            "NotificationTitle": self.title,
            "NotificationType": self.type,
            "CorrelationId": self.correlation_id,
        }


Subscriber = Callable[[Notification], None]


class NotificationEmitter:
    """Publishes notifications to every subscriber, asynchronously."""

    def __init__(self, workers: int = 2):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self._closed = False
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify")

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def publish(self, notification: Notification) -> None:
        """Queue *notification* for delivery. Never raises."""
        with self._lock:
            if self._closed:
                logger.debug("Emitter closed, dropping %s", notification.type)
                return
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                future = self._pool.submit(self._deliver, subscriber, notification)
            except RuntimeError as e:
                logger.warning("Notification not delivered: %s", e)
                continue
            with self._lock:
                self._pending.add(future)
            # Runs _discard inline when the future is already done; must not hold _lock.
            future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    @staticmethod
    def _deliver(subscriber: Subscriber, notification: Notification) -> None:
        try:
            subscriber(notification)
        except Exception as e:
            logger.warning(
                "Notification subscriber failed for %s [%s]: %s",
                notification.type, notification.correlation_id, e,
            )

    def join(self, timeout: float | None = None) -> bool:
        """Wait for queued deliveries. Returns False on timeout."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=True)


def log_subscriber(notification: Notification) -> None:
    logger.info(
        "[%s] %s (%s)", notification.type, notification.title, notification.correlation_id,
    )


def webhook_subscriber(url: str, timeout: float = 10.0) -> Subscriber:
    """Build a subscriber that POSTs each notification as JSON to *url*."""

    def post(notification: Notification) -> None:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(
                url, json=notification.to_dict(), headers=notification.headers(),
            )
            response.raise_for_status()

    return post
