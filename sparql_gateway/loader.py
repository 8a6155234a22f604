"""
SPARQL Gateway - Batch loader.
Bulk ingestion of graph snapshots and update scripts dropped as files:

  *.graph   sidecar naming the target graph of the same-named data file
  *.sparql  update script, executed once in one write transaction
  other     RDF payload: parsed, deduplicated, partitioned and inserted
            batch by batch with local retry

Batches are prepared in parallel and committed one after another. When a
batch exhausts its retries the whole file fails; batches committed before it
stay in place.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rdflib import Dataset, Graph
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ._utils import base_name, extension, now_iso
from .cache import GraphNameCache
from .classifier import classify
from .errors import ExhaustedRetryError, ParseError, is_retryable
from .formats import QUAD_FORMATS, rdf_format_for
from .notify import (
    SYNC_FILE_FAILURE,
    SYNC_FILE_TRIPLESTORE,
    Notification,
    NotificationEmitter,
)

logger = logging.getLogger("sparql_gateway.loader")

__all__ = [
    "BatchJob",
    "BatchLoader",
    "DirectoryWatcher",
    "IngestionReport",
    "partition",
    "GRAPH_SUFFIX",
    "UPDATE_SUFFIX",
]

GRAPH_SUFFIX = "graph"
UPDATE_SUFFIX = "sparql"

DONE_DIR = ".done"
FAILED_DIR = ".failed"


@dataclass
class BatchJob:
    triples: tuple
    target_graph: str
    retry_count: int = 0
    model: Graph | None = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class IngestionReport:
    file_name: str
    kind: str
    graph: str | None = None
    triples: int = 0
    batches: int = 0
    correlation_id: str = ""


def partition(triples: Sequence, batch_size: int, graph: str) -> list[BatchJob]:
    """Slice *triples* into consecutive, disjoint jobs of at most *batch_size*."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [
        BatchJob(triples=tuple(triples[i:i + batch_size]), target_graph=graph)
        for i in range(0, len(triples), batch_size)
    ]


def _prepare(job: BatchJob) -> BatchJob:
    model = Graph()
    for triple in job.triples:
        model.add(triple)
    job.model = model
    return job


class BatchLoader:
    """
    Drives ingested files into the store through the transactional executor.

    Args:
        executor: TransactionalExecutor (needs write() and insert()).
        cache: Graph-name cache filled by sidecar files.
        default_graph: Target graph when no sidecar was seen for a file.
        batch_size: Triples per write transaction.
        max_retry: Retries after the first attempt of each batch.
        prepare_workers: Threads used to build batch models.
        notifier: Optional emitter for SYNC_FILE_* notifications.
    """

    def __init__(
        self,
        executor: Any,
        cache: GraphNameCache,
        default_graph: str,
        batch_size: int = 1000,
        max_retry: int = 5,
        prepare_workers: int = 4,
        notifier: NotificationEmitter | None = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._executor = executor
        self._cache = cache
        self._default_graph = default_graph
        self._batch_size = batch_size
        self._max_retry = max(0, max_retry)
        self._prepare_workers = max(1, prepare_workers)
        self._notifier = notifier
        self._scan_lock = threading.Lock()
        self._rescan_lock = threading.Lock()
        self._rescan = False

    @property
    def cache(self) -> GraphNameCache:
        return self._cache

    # =========================================================================
    # Single file
    # =========================================================================

    def ingest(self, file_name: str, payload: bytes | str,
               correlation_id: str | None = None) -> IngestionReport:
        """
        Ingest one file's content.

        Raises:
            ParseError: unparseable payload or unknown syntax.
            ExhaustedRetryError: a batch failed more than max_retry times.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        ext = extension(file_name)
        try:
            if ext == GRAPH_SUFFIX:
                return self._declare_graph(file_name, payload, correlation_id)
            if ext == UPDATE_SUFFIX:
                report = self._run_script(file_name, payload, correlation_id)
            else:
                report = self._load_rdf(file_name, payload, correlation_id)
        except Exception as e:
            self._notify(SYNC_FILE_FAILURE, f"sync failed: {file_name}", correlation_id, str(e))
            raise
        self._notify(
            SYNC_FILE_TRIPLESTORE, f"file synchronized: {file_name}", correlation_id,
            f"{report.triples} triples in {report.batches} batches" if report.kind == "rdf" else "",
        )
        return report

    def _declare_graph(self, file_name: str, payload: bytes | str,
                       correlation_id: str) -> IngestionReport:
        graph = _text(payload).strip()
        if not graph:
            raise ParseError(f"{file_name}: empty graph declaration")
        self._cache.put(base_name(file_name), graph)
        logger.info("Graph declared for %s: <%s>", base_name(file_name), graph)
        return IngestionReport(
            file_name=file_name, kind="graph-declaration", graph=graph,
            correlation_id=correlation_id,
        )

    def _run_script(self, file_name: str, payload: bytes | str,
                    correlation_id: str) -> IngestionReport:
        operation = classify(_text(payload))
        if operation.is_read:
            raise ParseError(f"{file_name}: expected an update script, found a query")
        self._executor.write(operation.ast)
        logger.info("Update script executed: %s", file_name)
        return IngestionReport(
            file_name=file_name, kind="update-script", correlation_id=correlation_id,
        )

    def _load_rdf(self, file_name: str, payload: bytes | str,
                  correlation_id: str) -> IngestionReport:
        fmt = rdf_format_for(file_name)
        if fmt is None:
            raise ParseError(f"{file_name}: no RDF syntax for this extension")
        try:
            if fmt in QUAD_FORMATS:
                ds = Dataset()
                ds.parse(data=payload, format=fmt)
                parsed = [(s, p, o) for s, p, o, _ in ds.quads()]
            else:
                parsed = list(Graph().parse(data=payload, format=fmt))
        except Exception as e:
            raise ParseError(f"{file_name}: {type(e).__name__}: {e}") from e

        triples = list(dict.fromkeys(parsed))
        graph = self._cache.get(base_name(file_name)) or self._default_graph
        jobs = partition(triples, self._batch_size, graph)
        logger.info(
            "Loading %s: %d triples into <%s> in %d batches",
            file_name, len(triples), graph, len(jobs),
        )

        with ThreadPoolExecutor(max_workers=self._prepare_workers,
                                thread_name_prefix="batch-prepare") as pool:
            for job in pool.map(_prepare, jobs):
                self.insert_model_or_retry(job)

        return IngestionReport(
            file_name=file_name, kind="rdf", graph=graph, triples=len(triples),
            batches=len(jobs), correlation_id=correlation_id,
        )

    def insert_model_or_retry(self, job: BatchJob) -> None:
        """
        Insert one batch: a first attempt plus up to max_retry retries.
        Non-retryable errors propagate at once.
        """
        triples = job.model if job.model is not None else job.triples
        while True:
            try:
                self._executor.insert(job.target_graph, triples)
                return
            except Exception as e:
                if not is_retryable(e):
                    raise
                if job.retry_count >= self._max_retry:
                    raise ExhaustedRetryError(
                        f"batch of {len(job.triples)} triples into <{job.target_graph}> "
                        f"failed after {job.retry_count + 1} attempts: {e}",
                        attempts=job.retry_count + 1,
                        last_error=e,
                    ) from e
                job.retry_count += 1
                logger.warning(
                    "Batch insert into <%s> failed (retry %d/%d): %s",
                    job.target_graph, job.retry_count, self._max_retry, e,
                )

    def _notify(self, kind: str, title: str, correlation_id: str, detail: str = "") -> None:
        if self._notifier is None:
            return
        self._notifier.publish(Notification(
            title=title, type=kind, correlation_id=correlation_id, detail=detail,
        ))

    # =========================================================================
    # Directory scan
    # =========================================================================

    def ingest_directory(self, directory: Path | str) -> list[IngestionReport]:
        """
        Ingest every regular, non-hidden file in *directory*, ordered by name
        then modification time. Processed files move to .done/ or .failed/.
        Concurrent calls fold into one extra pass of the running scan.
        """
        directory = Path(directory)
        with self._rescan_lock:
            self._rescan = True
        if not self._scan_lock.acquire(blocking=False):
            logger.debug("Scan already in progress, queued a rescan")
            return []

        reports: list[IngestionReport] = []
        try:
            while True:
                with self._rescan_lock:
                    if not self._rescan:
                        break
                    self._rescan = False
                reports.extend(self._scan_once(directory))
        finally:
            self._scan_lock.release()
        return reports

    def _scan_once(self, directory: Path) -> list[IngestionReport]:
        if not directory.is_dir():
            logger.warning("Ingest directory does not exist: %s", directory)
            return []

        entries = []
        for fp in directory.iterdir():
            if fp.name.startswith(".") or not fp.is_file():
                continue
            try:
                entries.append((fp.name, fp.stat().st_mtime, fp))
            except OSError:
                continue
        entries.sort(key=lambda e: (e[0], e[1]))

        reports: list[IngestionReport] = []
        failed = 0
        for _, _, fp in entries:
            try:
                report = self.ingest(fp.name, fp.read_bytes())
            except Exception as e:
                failed += 1
                logger.error("Ingestion failed for %s: %s", fp.name, e, exc_info=True)
                _move_aside(fp, FAILED_DIR)
                continue
            _move_aside(fp, DONE_DIR)
            reports.append(report)

        if entries:
            logger.info(
                "Scan of %s complete: %d ingested | %d failed",
                directory, len(reports), failed,
            )
        return reports


def _text(payload: bytes | str) -> str:
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    return payload


def _move_aside(fp: Path, subdir: str) -> Path | None:
    target_dir = fp.parent / subdir
    try:
        target_dir.mkdir(exist_ok=True)
        target = target_dir / fp.name
        if target.exists():
            stamp = now_iso().replace(":", "")
            target = target_dir / f"{fp.stem}.{stamp}{fp.suffix}"
        fp.replace(target)
        return target
    except OSError as e:
        logger.error("Could not move %s to %s: %s", fp, subdir, e)
        return None


# =========================================================================
# Watching
# =========================================================================


class IngestEventHandler(FileSystemEventHandler):
    """Watchdog handler: any new or changed file requests a debounced rescan."""

    def __init__(self, watcher: DirectoryWatcher):
        super().__init__()
        self._watcher = watcher

    def on_created(self, event):
        if not event.is_directory:
            self._watcher.notice(event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self._watcher.notice(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._watcher.notice(event.dest_path)


class DirectoryWatcher:
    """
    Keeps an ingest directory drained: an initial scan, watchdog events
    (debounced) and a periodic full rescan as a safety net.
    """

    def __init__(
        self,
        loader: BatchLoader,
        directory: Path | str,
        enable_watchdog: bool = True,
        scan_interval: float = 60.0,
        debounce_seconds: float = 1.0,
    ):
        self._loader = loader
        self._directory = Path(directory).resolve()
        self._enable_watchdog = enable_watchdog
        self._scan_interval = scan_interval
        self._debounce_seconds = debounce_seconds
        self._observer: Observer | None = None
        self._shutdown = threading.Event()
        self._timer: threading.Timer | None = None
        self._timer_lock = threading.Lock()
        self._periodic: threading.Thread | None = None

    @property
    def directory(self) -> Path:
        return self._directory

    def notice(self, path: str) -> None:
        fp = Path(path)
        if fp.name.startswith(".") or fp.parent.resolve() != self._directory:
            return
        logger.debug("Change in ingest directory: %s", fp.name)
        with self._timer_lock:
            if self._timer is not None or self._shutdown.is_set():
                return
            self._timer = threading.Timer(self._debounce_seconds, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._timer_lock:
            self._timer = None
        self.scan()

    def scan(self) -> list[IngestionReport]:
        try:
            return self._loader.ingest_directory(self._directory)
        except Exception as e:
            logger.error("Scan of %s failed: %s", self._directory, e, exc_info=True)
            return []

    def _periodic_loop(self) -> None:
        while not self._shutdown.wait(timeout=self._scan_interval):
            self.scan()

    def start(self) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        logger.info("Watching ingest directory: %s", self._directory)
        self.scan()

        if self._enable_watchdog:
            self._observer = Observer()
            self._observer.schedule(IngestEventHandler(self), str(self._directory), recursive=False)
            self._observer.start()

        if self._scan_interval and self._scan_interval > 0:
            self._periodic = threading.Thread(
                target=self._periodic_loop, name="ingest-rescan", daemon=True,
            )
            self._periodic.start()

    def stop(self) -> None:
        self._shutdown.set()
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        if self._periodic is not None:
            self._periodic.join(timeout=5)
            self._periodic = None
