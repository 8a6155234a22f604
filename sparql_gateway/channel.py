"""
SPARQL Gateway - Asynchronous message channels.
Named channels with explicitly registered handler functions, a worker pool
per channel, bounded redelivery with exponential backoff and dead-lettering.

A channel owns each message from admission until it is acknowledged (the
handler returned) or dead-lettered (the dead-letter target accepted a copy).
With a spool directory configured, admission means the message is on disk;
spooled messages left behind by a crash are re-admitted when the channel is
created, with their redelivery count intact.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path

from ._utils import abbreviate, now_iso
from .errors import is_retryable

logger = logging.getLogger("sparql_gateway.channel")

__all__ = [
    "UpdateMessage",
    "Channel",
    "MessageBus",
    "READ_CHANNEL",
    "UPDATE_CHANNEL",
    "FAILURE_CHANNEL",
]

READ_CHANNEL = "sparql-read"
UPDATE_CHANNEL = "sparql-update"
FAILURE_CHANNEL = "sparql-update-failure"


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class UpdateMessage:
    body: str
    correlation_id: str = field(default_factory=_new_id)
    redelivery_count: int = 0
    channel: str = ""
    enqueued_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> UpdateMessage:
        return cls(
            body=data["body"],
            correlation_id=data["correlation_id"],
            redelivery_count=int(data.get("redelivery_count", 0)),
            channel=data.get("channel", ""),
            enqueued_at=data.get("enqueued_at") or now_iso(),
        )


Handler = Callable[[UpdateMessage], None]
DeadLetter = Callable[[UpdateMessage], None]


class Channel:
    """
    One named queue plus its workers.

    Args:
        name: Channel name, also the spool subdirectory.
        handler: Called with each message; returning acknowledges it.
        workers: Worker threads. One worker gives near-FIFO processing.
        max_redeliveries: Redeliveries after the first attempt before dead-lettering.
        redelivery_delay: Seconds before the first redelivery.
        backoff_multiplier: Factor applied per further redelivery.
        max_redelivery_delay: Upper bound for the backoff.
        dead_letter: Receives messages that exhausted redelivery or failed
            with a non-retryable error.
        spool_dir: Directory for durable admission; None keeps messages in memory only.
    """

    def __init__(
        self,
        name: str,
        handler: Handler,
        workers: int = 1,
        max_redeliveries: int = 5,
        redelivery_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        max_redelivery_delay: float = 60.0,
        dead_letter: DeadLetter | None = None,
        spool_dir: Path | None = None,
    ):
        self.name = name
        self._handler = handler
        self._workers = max(1, workers)
        self._max_redeliveries = max(0, max_redeliveries)
        self._delay = redelivery_delay
        self._multiplier = backoff_multiplier
        self._max_delay = max_redelivery_delay
        self._dead_letter = dead_letter
        self._spool = Path(spool_dir) / name if spool_dir is not None else None

        self._queue: queue.Queue[UpdateMessage | None] = queue.Queue()
        self._shutdown = threading.Event()
        self._threads: list[threading.Thread] = []
        self._started = False
        self._cond = threading.Condition()
        self._pending = 0
        self._stats = {"acked": 0, "redelivered": 0, "dead_lettered": 0}
        self._recover()

    # =========================================================================
    # Admission
    # =========================================================================

    def enqueue(self, body: str, correlation_id: str | None = None) -> str:
        """Admit *body*; returns its correlation id once it is owned by the channel."""
        if self._shutdown.is_set():
            raise RuntimeError(f"channel {self.name} is stopped")
        msg = UpdateMessage(
            body=body,
            correlation_id=correlation_id or _new_id(),
            channel=self.name,
        )
        self._write_spool(msg)
        self._admit(msg)
        logger.debug("[%s] admitted %s", self.name, msg.correlation_id)
        return msg.correlation_id

    def _admit(self, msg: UpdateMessage) -> None:
        with self._cond:
            self._pending += 1
        self._queue.put(msg)

    def _done(self) -> None:
        with self._cond:
            self._pending -= 1
            if self._pending == 0:
                self._cond.notify_all()

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def join(self, timeout: float | None = None) -> bool:
        """Block until every admitted message is acked or dead-lettered."""
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout)

    # =========================================================================
    # Spool
    # =========================================================================

    def _spool_path(self, msg: UpdateMessage) -> Path | None:
        if self._spool is None:
            return None
        return self._spool / f"{msg.correlation_id}.json"

    def _write_spool(self, msg: UpdateMessage) -> None:
        path = self._spool_path(msg)
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(msg.to_dict()), encoding="utf-8")
        tmp.replace(path)

    def _remove_spool(self, msg: UpdateMessage) -> None:
        path = self._spool_path(msg)
        if path is not None:
            path.unlink(missing_ok=True)

    def _recover(self) -> int:
        if self._spool is None or not self._spool.is_dir():
            return 0
        recovered: list[UpdateMessage] = []
        for path in self._spool.glob("*.json"):
            try:
                recovered.append(UpdateMessage.from_dict(
                    json.loads(path.read_text(encoding="utf-8"))
                ))
            except (OSError, ValueError, KeyError) as e:
                logger.error("[%s] unreadable spool record %s: %s", self.name, path, e)
        recovered.sort(key=lambda m: m.enqueued_at)
        for msg in recovered:
            self._admit(msg)
        if recovered:
            logger.info("[%s] recovered %d spooled messages", self.name, len(recovered))
        return len(recovered)

    # =========================================================================
    # Workers
    # =========================================================================

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for i in range(self._workers):
            t = threading.Thread(
                target=self._run, name=f"{self.name}-worker-{i}", daemon=True,
            )
            t.start()
            self._threads.append(t)

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop workers after their current message. Spooled messages stay on disk."""
        self._shutdown.set()
        for _ in self._threads:
            self._queue.put(None)
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads.clear()
        # Unprocessed in-memory messages must not vanish silently.
        while True:
            try:
                msg = self._queue.get_nowait()
            except queue.Empty:
                break
            if msg is None:
                continue
            if self._spool is None:
                logger.error(
                    "[%s] stopped with unprocessed message %s: %s",
                    self.name, msg.correlation_id, abbreviate(msg.body),
                )
            self._done()

    def _run(self) -> None:
        while True:
            msg = self._queue.get()
            if msg is None:
                return
            try:
                self._process(msg)
            except Exception:
                logger.exception("[%s] unexpected failure on %s", self.name, msg.correlation_id)
            finally:
                self._done()

    def _backoff(self, attempt: int) -> float:
        delay = self._delay * (self._multiplier ** (attempt - 1))
        return min(delay, self._max_delay)

    def _process(self, msg: UpdateMessage) -> None:
        while True:
            try:
                self._handler(msg)
            except Exception as exc:
                if not is_retryable(exc):
                    logger.error(
                        "[%s] %s failed permanently: %s", self.name, msg.correlation_id, exc,
                    )
                    self._send_to_dead_letter(msg)
                    return
                if msg.redelivery_count >= self._max_redeliveries:
                    logger.error(
                        "[%s] %s failed after %d redeliveries: %s",
                        self.name, msg.correlation_id, msg.redelivery_count, exc,
                    )
                    self._send_to_dead_letter(msg)
                    return
                msg.redelivery_count += 1
                self._count("redelivered")
                self._write_spool(msg)
                delay = self._backoff(msg.redelivery_count)
                logger.warning(
                    "[%s] redelivering %s (%d/%d) in %.2fs: %s",
                    self.name, msg.correlation_id, msg.redelivery_count,
                    self._max_redeliveries, delay, exc,
                )
                if self._shutdown.wait(delay):
                    if self._spool is None:
                        logger.error(
                            "[%s] shutdown during redelivery of %s, dead-lettering",
                            self.name, msg.correlation_id,
                        )
                        self._send_to_dead_letter(msg)
                    return
                continue
            self._remove_spool(msg)
            self._count("acked")
            return

    def _send_to_dead_letter(self, msg: UpdateMessage) -> None:
        if self._dead_letter is None:
            logger.error(
                "[%s] no dead-letter target, %s kept%s: %s",
                self.name, msg.correlation_id,
                " in spool" if self._spool is not None else "",
                abbreviate(msg.body),
            )
            return
        try:
            self._dead_letter(msg)
        except Exception:
            logger.error(
                "[%s] dead-letter delivery failed for %s", self.name, msg.correlation_id,
                exc_info=True,
            )
            return
        self._remove_spool(msg)
        self._count("dead_lettered")

    def _count(self, key: str) -> None:
        with self._cond:
            self._stats[key] += 1

    def get_stats(self) -> dict:
        with self._cond:
            stats = dict(self._stats)
        return {
            "pending": self.pending,
            "workers": self._workers,
            "max_redeliveries": self._max_redeliveries,
            **stats,
        }


class MessageBus:
    """Registry of named channels. Handlers are registered, never subclassed."""

    def __init__(self, spool_dir: Path | None = None):
        self._channels: dict[str, Channel] = {}
        self._spool_dir = spool_dir

    def register(self, name: str, handler: Handler, *,
                 dead_letter: str | DeadLetter | None = None,
                 durable: bool = True, **options) -> Channel:
        """
        Register *handler* on channel *name*.

        `dead_letter` is either another channel's name or a callable. A named
        target should be registered first so that it outlives its sources on
        stop(). Remaining keyword options are passed to Channel.
        """
        if name in self._channels:
            raise ValueError(f"channel already registered: {name}")
        if isinstance(dead_letter, str):
            target = dead_letter

            def forward(msg: UpdateMessage) -> None:
                self.send(target, msg.body, correlation_id=msg.correlation_id)

            dead_letter = forward
        channel = Channel(
            name, handler,
            dead_letter=dead_letter,
            spool_dir=self._spool_dir if durable else None,
            **options,
        )
        self._channels[name] = channel
        return channel

    def channel(self, name: str) -> Channel:
        try:
            return self._channels[name]
        except KeyError:
            raise ValueError(f"unknown channel: {name}") from None

    def send(self, name: str, body: str, correlation_id: str | None = None) -> str:
        return self.channel(name).enqueue(body, correlation_id=correlation_id)

    def start(self) -> None:
        for channel in self._channels.values():
            channel.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop channels in reverse registration order. A dead-letter target
        registered before its sources stays up until they have handed off.
        """
        for channel in reversed(list(self._channels.values())):
            channel.stop(timeout=timeout)

    def join(self, timeout: float | None = None) -> bool:
        """Wait until every channel is idle, following dead-letter hand-offs."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            for channel in self._channels.values():
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                if not channel.join(remaining):
                    return False
            if all(c.pending == 0 for c in self._channels.values()):
                return True

    def get_stats(self) -> dict:
        return {name: c.get_stats() for name, c in self._channels.items()}
