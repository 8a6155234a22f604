"""
SPARQL Gateway - RDF dataset store.
In-process implementation of the storage-engine contract the gateway core
consumes: scoped read/write transactions, query and update execution and
bulk triple insertion over an rdflib Dataset, persisted as N-Quads.

Concurrency: one exclusive writer, any number of shared readers, never both.
Write transactions work on a copy of the dataset which replaces the live one
on commit, so an abort is a discard and every read sees the snapshot that was
current when it began.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Iterable
from enum import Enum
from pathlib import Path
from typing import Any

from rdflib import Dataset, URIRef
from rdflib.graph import DATASET_DEFAULT_GRAPH_ID
from rdflib.plugins.sparql import prepareUpdate
from rdflib.plugins.sparql import update as sparql_update
from rdflib.plugins.sparql.sparql import QueryContext

from ._utils import now_iso
from .errors import TransactionStateError, TransientStorageError, UnsupportedOperationType

logger = logging.getLogger("sparql_gateway.store")

__all__ = ["GraphStore", "ReadWriteLock", "Transaction", "TxnMode", "TxnState"]

_UPDATE_OPERATIONS = {
    "Load": sparql_update.evalLoad,
    "Clear": sparql_update.evalClear,
    "Drop": sparql_update.evalDrop,
    "Create": sparql_update.evalCreate,
    "Add": sparql_update.evalAdd,
    "Move": sparql_update.evalMove,
    "Copy": sparql_update.evalCopy,
    "InsertData": sparql_update.evalInsertData,
    "DeleteData": sparql_update.evalDeleteData,
    "DeleteWhere": sparql_update.evalDeleteWhere,
    "Modify": sparql_update.evalModify,
}


def _new_dataset() -> Dataset:
    # Queries see the union of all graphs as their default graph.
    return Dataset(default_union=True)


def _graph_id(context: Any) -> Any:
    """Quad context (graph, identifier or None) as a graph identifier."""
    identifier = getattr(context, "identifier", context)
    return DATASET_DEFAULT_GRAPH_ID if identifier is None else identifier


def apply_update(dataset: Dataset, update: Any) -> None:
    """
    Evaluate a SPARQL update against *dataset*, one operation at a time, in
    lexical order. The first failing operation aborts the rest unless it is
    SILENT.

    Dataset.update() would hand rdflib the union view as the default graph,
    so triples outside a GRAPH clause must be routed explicitly: every
    operation here reads and writes the stored default graph
    (DATASET_DEFAULT_GRAPH_ID), never the union.
    """
    if isinstance(update, str):
        update = prepareUpdate(update)
    default_graph = dataset.get_context(DATASET_DEFAULT_GRAPH_ID)
    for operation in update.algebra:
        handler = _UPDATE_OPERATIONS.get(operation.name)
        if handler is None:
            raise UnsupportedOperationType(f"unknown update operation: {operation.name}")
        ctx = QueryContext(dataset)
        ctx.graph = default_graph
        ctx.prologue = operation.prologue
        try:
            handler(ctx, operation)
        except Exception:
            if not operation.silent:
                raise
            logger.debug("SILENT %s failed, continuing", operation.name, exc_info=True)


class ReadWriteLock:
    """
    Shared/exclusive lock, writer-preferring.
    Not bound to the acquiring thread: a read may be released by the thread
    that gave up waiting on it.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self, timeout: float | None = None) -> bool:
        with self._cond:
            if not self._cond.wait_for(
                lambda: not self._writer and self._waiting_writers == 0, timeout,
            ):
                return False
            self._readers += 1
            return True

    def release_read(self) -> None:
        with self._cond:
            if self._readers <= 0:
                raise RuntimeError("release_read() without a matching acquire_read()")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: float | None = None) -> bool:
        with self._cond:
            self._waiting_writers += 1
            try:
                if not self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0, timeout,
                ):
                    return False
                self._writer = True
                return True
            finally:
                self._waiting_writers -= 1
                self._cond.notify_all()

    def release_write(self) -> None:
        with self._cond:
            if not self._writer:
                raise RuntimeError("release_write() without a matching acquire_write()")
            self._writer = False
            self._cond.notify_all()

    @property
    def readers(self) -> int:
        with self._cond:
            return self._readers

    @property
    def write_locked(self) -> bool:
        with self._cond:
            return self._writer


class TxnMode(Enum):
    READ = "read"
    WRITE = "write"


class TxnState(Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ABORTED = "aborted"


class Transaction:
    """
    Scoped transaction handle. Use as a context manager: a clean exit
    commits, an exception aborts. Ending twice is a no-op for abort and an
    error for commit.
    """

    def __init__(self, store: GraphStore, mode: TxnMode, dataset: Dataset, txn_id: int):
        self._store = store
        self._dataset = dataset
        self._state_lock = threading.Lock()
        self.mode = mode
        self.state = TxnState.OPEN
        self.txn_id = txn_id

    def __repr__(self) -> str:
        return f"<Transaction #{self.txn_id} {self.mode.value} {self.state.value}>"

    @property
    def is_open(self) -> bool:
        return self.state is TxnState.OPEN

    def _check_open(self) -> None:
        if self.state is not TxnState.OPEN:
            raise TransactionStateError(f"transaction #{self.txn_id} is {self.state.value}")

    def _check_write(self) -> None:
        if self.mode is not TxnMode.WRITE:
            raise TransactionStateError(f"transaction #{self.txn_id} is read-only")

    # -- operations ---------------------------------------------------------

    def execute_query(self, query: Any) -> Any:
        """Evaluate a prepared query (or query text) against this snapshot."""
        self._check_open()
        return self._dataset.query(query)

    def execute_update(self, update: Any) -> None:
        self._check_open()
        self._check_write()
        apply_update(self._dataset, update)

    def bulk_insert(self, graph_uri: str, triples: Iterable[tuple]) -> int:
        """Insert *triples* into named graph *graph_uri*. Returns the graph size."""
        self._check_open()
        self._check_write()
        graph = self._dataset.graph(URIRef(graph_uri))
        self._dataset.addN((s, p, o, graph) for s, p, o in triples)
        return len(graph)

    # -- lifecycle ----------------------------------------------------------

    def commit(self) -> None:
        with self._state_lock:
            self._check_open()
            try:
                self._store._finish(self, commit=True)
            except BaseException:
                self.state = TxnState.ABORTED
                raise
            self.state = TxnState.COMMITTED

    def abort(self) -> None:
        with self._state_lock:
            if self.state is not TxnState.OPEN:
                return
            self.state = TxnState.ABORTED
            self._store._finish(self, commit=False)

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self.abort()
        elif self.is_open:
            self.commit()
        return False


class GraphStore:
    """
    Persistent RDF dataset with single-writer transactions.
    All dataset swaps happen under the exclusive lock; flushes write the
    committed dataset to disk atomically (tmp file + replace).
    """

    def __init__(
        self,
        store_dir: Path | None = None,
        data_file: str = "dataset.nq",
        flush_interval: int = 1,
        lock_timeout: float | None = None,
    ):
        self._lock = ReadWriteLock()
        self._flush_lock = threading.Lock()
        self._lock_timeout = lock_timeout
        self._flush_interval = max(1, flush_interval)
        self._txn_ids = itertools.count(1)
        self._commit_count = 0
        self._abort_count = 0
        self._dirty = False
        self._last_commit: str | None = None

        self._data_path: Path | None = None
        self._dataset = _new_dataset()
        if store_dir is not None:
            store_dir = Path(store_dir)
            store_dir.mkdir(parents=True, exist_ok=True)
            self._data_path = store_dir / data_file
            if self._data_path.exists():
                self._dataset.parse(str(self._data_path), format="nquads")
                logger.info("Dataset loaded: %s (%d triples)", self._data_path, len(self._dataset))

    @property
    def lock(self) -> ReadWriteLock:
        return self._lock

    @property
    def triple_count(self) -> int:
        with self.begin_read() as txn:
            return len(txn._dataset)

    # =========================================================================
    # Transactions
    # =========================================================================

    def begin_read(self) -> Transaction:
        if not self._lock.acquire_read(self._lock_timeout):
            raise TransientStorageError("timed out waiting for a read transaction")
        txn = Transaction(self, TxnMode.READ, self._dataset, next(self._txn_ids))
        logger.debug("Begin %r", txn)
        return txn

    def begin_write(self) -> Transaction:
        if not self._lock.acquire_write(self._lock_timeout):
            raise TransientStorageError("timed out waiting for the write lock")
        try:
            working = self._clone(self._dataset)
        except BaseException:
            self._lock.release_write()
            raise
        txn = Transaction(self, TxnMode.WRITE, working, next(self._txn_ids))
        logger.debug("Begin %r", txn)
        return txn

    def _finish(self, txn: Transaction, commit: bool) -> None:
        """End *txn*. Called by the handle with its state lock held."""
        try:
            if txn.mode is TxnMode.WRITE:
                if commit:
                    self._commit_count += 1
                    if self._commit_count % self._flush_interval == 0:
                        self._write_to_disk(txn._dataset)
                    else:
                        self._dirty = True
                    self._dataset = txn._dataset
                    self._last_commit = now_iso()
                else:
                    self._abort_count += 1
        finally:
            if txn.mode is TxnMode.WRITE:
                self._lock.release_write()
            else:
                self._lock.release_read()
            logger.debug("End %r (%s)", txn, "commit" if commit else "abort")

    @staticmethod
    def _clone(dataset: Dataset) -> Dataset:
        copy = _new_dataset()
        for prefix, namespace in dataset.namespaces():
            copy.bind(prefix, namespace, override=False)
        for graph in dataset.graphs():
            copy.graph(graph.identifier)
        copy.addN(
            (s, p, o, _graph_id(c))
            for s, p, o, c in dataset.quads()
        )
        return copy

    # =========================================================================
    # Persistence
    # =========================================================================

    def _write_to_disk(self, dataset: Dataset) -> None:
        if self._data_path is None:
            return
        with self._flush_lock:
            tmp = self._data_path.with_suffix(".tmp")
            try:
                dataset.serialize(destination=str(tmp), format="nquads")
                tmp.replace(self._data_path)
            except OSError as exc:
                raise TransientStorageError(f"could not persist dataset: {exc}") from exc
            self._dirty = False
            logger.debug("Flushed %d triples to %s", len(dataset), self._data_path)

    def flush(self) -> None:
        """Write the committed dataset to disk if commits are pending."""
        with self.begin_read() as txn:
            if self._dirty:
                self._write_to_disk(txn._dataset)

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_stats(self) -> dict:
        with self.begin_read() as txn:
            dataset = txn._dataset
            named = [
                g for g in dataset.graphs()
                if g.identifier != DATASET_DEFAULT_GRAPH_ID and len(g) > 0
            ]
            return {
                "total_triples": len(dataset),
                "named_graphs": len(named),
                "commits": self._commit_count,
                "aborts": self._abort_count,
                "last_commit": self._last_commit,
                "data_file": str(self._data_path) if self._data_path else None,
            }
