"""
SPARQL Gateway - Core dispatcher.
Wires classifier, transactional executor, message channels, failure store,
batch loader and notifications into one facade used by the HTTP app, the
CLI and the MCP server.

Reads run synchronously in the caller. Updates are authorized, admitted to
the `sparql-update` channel and answered with a correlation id; a channel
worker executes them later, redelivering on failure and dead-lettering to
the failure store once the redelivery bound is reached.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ._utils import abbreviate
from .cache import GraphNameCache
from .channel import (
    FAILURE_CHANNEL,
    READ_CHANNEL,
    UPDATE_CHANNEL,
    MessageBus,
    UpdateMessage,
)
from .classifier import classify
from .config import GatewayConfig, configure_logging
from .errors import ParseError
from .executor import TransactionalExecutor
from .failures import FailureStore
from .formats import SparqlResult
from .loader import BatchLoader, DirectoryWatcher, IngestionReport
from .notify import (
    UPDATE_QUERY_FAILURE,
    UPDATE_QUERY_TRIPLESTORE,
    Notification,
    NotificationEmitter,
    log_subscriber,
    webhook_subscriber,
)
from .security import Principal, authorize_update
from .store import GraphStore

logger = logging.getLogger("sparql_gateway.gateway")

__all__ = ["SparqlGateway", "UpdateAccepted"]


@dataclass(frozen=True)
class UpdateAccepted:
    """Acknowledgment of an admitted update: accepted, not yet committed."""

    correlation_id: str
    message: str = "processing update"


class SparqlGateway:
    """
    Main gateway. Combines:
    - Synchronous, timeout-bounded reads
    - Asynchronous updates with redelivery and dead-lettering
    - Bulk ingestion from files or a watched directory
    - Completion and failure notifications
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        store: Any = None,
        notifier: NotificationEmitter | None = None,
    ):
        self._config = config or GatewayConfig.from_dict({})
        cfg = self._config
        configure_logging(cfg.log_level)

        self._store = store if store is not None else GraphStore(
            store_dir=cfg.store_path,
            data_file=cfg.data_file,
            flush_interval=cfg.flush_interval,
            lock_timeout=cfg.lock_timeout_seconds,
        )
        self._executor = TransactionalExecutor(self._store, cfg.query_timeout_seconds)

        if notifier is None:
            notifier = NotificationEmitter()
            notifier.subscribe(log_subscriber)
            if cfg.notification_webhook:
                notifier.subscribe(webhook_subscriber(cfg.notification_webhook))
        self._notifier = notifier

        self._failures = FailureStore(cfg.failure_directory)
        self._cache = GraphNameCache()
        self._loader = BatchLoader(
            self._executor,
            self._cache,
            default_graph=cfg.default_graph,
            batch_size=cfg.batch_size,
            max_retry=cfg.max_retry,
            prepare_workers=cfg.prepare_workers,
            notifier=self._notifier,
        )

        self._bus = MessageBus(spool_dir=cfg.spool_directory)
        backoff = dict(
            redelivery_delay=cfg.redelivery_delay_seconds,
            backoff_multiplier=cfg.redelivery_backoff_multiplier,
            max_redelivery_delay=cfg.max_redelivery_delay_seconds,
        )
        self._bus.register(READ_CHANNEL, self._log_read, durable=False, max_redeliveries=0)
        self._bus.register(
            FAILURE_CHANNEL, self._persist_failure,
            max_redeliveries=cfg.max_retry, **backoff,
        )
        self._bus.register(
            UPDATE_CHANNEL, self._handle_update,
            workers=cfg.update_workers,
            max_redeliveries=cfg.max_retry,
            dead_letter=FAILURE_CHANNEL,
            **backoff,
        )

        self._watcher: DirectoryWatcher | None = None
        if cfg.ingest_directory is not None:
            self._watcher = DirectoryWatcher(
                self._loader,
                cfg.ingest_directory,
                enable_watchdog=cfg.enable_watchdog,
                scan_interval=cfg.scan_interval_seconds,
            )

        self._lifecycle_lock = threading.Lock()
        self._started = False
        self._stopped = False
        self._shutdown = threading.Event()

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def store(self) -> Any:
        return self._store

    @property
    def executor(self) -> TransactionalExecutor:
        return self._executor

    @property
    def loader(self) -> BatchLoader:
        return self._loader

    @property
    def failures(self) -> FailureStore:
        return self._failures

    @property
    def bus(self) -> MessageBus:
        return self._bus

    # =========================================================================
    # Dispatch
    # =========================================================================

    def execute(
        self,
        text: str,
        accept: str | None = None,
        principal: Principal | None = None,
        read_only: bool = False,
    ) -> SparqlResult | UpdateAccepted:
        """
        Classify *text* and route it: reads return a rendered SparqlResult,
        updates return UpdateAccepted once admitted.

        Raises:
            ParseError: text is neither a query nor (unless read_only) an update.
            AuthorizationError: an update from a principal without an allowed role.
            QueryTimeoutError: a read outlived query_timeout_seconds.
        """
        operation = classify(text, read_only=read_only)
        if operation.is_read:
            self._mirror_read(text)
            return self._executor.read(operation.ast, accept)
        return self._admit_update(text, principal)

    def query(self, text: str, accept: str | None = None) -> SparqlResult:
        """Read-only entry point; update text is a ParseError."""
        return self.execute(text, accept=accept, read_only=True)

    def submit_update(self, text: str, principal: Principal | None = None) -> UpdateAccepted:
        operation = classify(text)
        if operation.is_read:
            raise ParseError("expected an update, found a query")
        return self._admit_update(text, principal)

    def _admit_update(self, text: str, principal: Principal | None) -> UpdateAccepted:
        cfg = self._config
        authorize_update(principal, cfg.security_enabled, cfg.allowed_update_roles)
        correlation_id = self._bus.send(UPDATE_CHANNEL, text)
        logger.info("Update accepted [%s]", correlation_id)
        return UpdateAccepted(correlation_id)

    def _mirror_read(self, text: str) -> None:
        if not self._started:
            logger.info("[%s] query: %s", READ_CHANNEL, abbreviate(text))
            return
        try:
            self._bus.send(READ_CHANNEL, text)
        except RuntimeError:
            logger.debug("Read mirror unavailable after shutdown")

    # =========================================================================
    # Channel handlers
    # =========================================================================

    @staticmethod
    def _log_read(message: UpdateMessage) -> None:
        logger.info("[%s] query: %s", READ_CHANNEL, abbreviate(message.body))

    def _handle_update(self, message: UpdateMessage) -> None:
        operation = classify(message.body)
        if operation.is_read:
            raise ParseError(f"message {message.correlation_id} is not an update")
        self._executor.write(operation.ast)
        logger.info("Update executed [%s]", message.correlation_id)
        self._notifier.publish(Notification(
            title="update executed",
            type=UPDATE_QUERY_TRIPLESTORE,
            correlation_id=message.correlation_id,
        ))

    def _persist_failure(self, message: UpdateMessage) -> None:
        path = self._failures.persist(message.body)
        self._notifier.publish(Notification(
            title="update failed",
            type=UPDATE_QUERY_FAILURE,
            correlation_id=message.correlation_id,
            detail=path.name,
        ))

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(self, file_name: str, payload: bytes | str) -> IngestionReport:
        return self._loader.ingest(file_name, payload)

    def ingest_file(self, path: str | Path) -> IngestionReport:
        fp = Path(path)
        return self._loader.ingest(fp.name, fp.read_bytes())

    def scan_ingest_directory(self) -> list[IngestionReport]:
        if self._config.ingest_directory is None:
            raise ValueError("ingest_directory is not configured")
        return self._loader.ingest_directory(self._config.ingest_directory)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start channel workers and, when configured, the ingest watcher."""
        with self._lifecycle_lock:
            if self._started:
                return
            self._started = True
        logger.info("SPARQL gateway starting...")
        logger.info("Store: %s", self._config.store_path or "in-memory")
        logger.info("Update workers: %d, max redeliveries: %d",
                    self._config.update_workers, self._config.max_retry)
        self._bus.start()
        if self._watcher is not None:
            self._watcher.start()

    def join(self, timeout: float | None = None) -> bool:
        """Wait until admitted messages are processed and notifications sent."""
        if not self._bus.join(timeout):
            return False
        return self._notifier.join(timeout)

    def stop(self) -> None:
        """Graceful shutdown."""
        with self._lifecycle_lock:
            if self._stopped:
                return
            self._stopped = True
        logger.info("Shutting down...")
        self._shutdown.set()
        if self._watcher is not None:
            self._watcher.stop()
        self._bus.stop()
        self._notifier.join(timeout=5)
        self._notifier.close()
        self._executor.shutdown()
        self._store.flush()
        logger.info("Final state: %s", self._store.get_stats())
        logger.info("SPARQL gateway stopped.")

    def run_forever(self) -> None:
        """Start and block until SIGINT/SIGTERM."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)
        self.start()
        self._shutdown.wait()

    def _signal_handler(self, signum, frame):
        self.stop()
        sys.exit(0)

    def stats(self) -> dict:
        return {
            "store": self._store.get_stats(),
            "channels": self._bus.get_stats(),
            "graph_cache_entries": len(self._cache),
            "failure_records": len(self._failures.records()),
        }
