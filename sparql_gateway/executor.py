"""
SPARQL Gateway - Transactional executor.
Runs exactly one storage transaction per call: reads in read mode bounded by
a timeout, writes in write mode serialized through a single executor lock.

Known limitation: a read that times out is abandoned, not interrupted. Its
transaction is aborted from the caller side and the worker's result is
discarded, but the engine call keeps running on the worker thread until it
returns on its own.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from concurrent.futures import CancelledError, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any

from .errors import QueryTimeoutError, UnsupportedOperationType
from .formats import ResultShape, SparqlResult, negotiate

logger = logging.getLogger("sparql_gateway.executor")

__all__ = ["TransactionalExecutor", "result_shape"]

_SHAPES = {
    "SelectQuery": ResultShape.SELECT,
    "AskQuery": ResultShape.ASK,
    "ConstructQuery": ResultShape.CONSTRUCT,
    "DescribeQuery": ResultShape.DESCRIBE,
}


def result_shape(query: Any) -> ResultShape:
    """Map a prepared rdflib query to its result shape."""
    name = getattr(getattr(query, "algebra", None), "name", None)
    shape = _SHAPES.get(name)
    if shape is None:
        raise UnsupportedOperationType(f"unsupported query form: {name}")
    return shape


class TransactionalExecutor:
    """
    Transaction discipline over a storage engine exposing
    begin_read()/begin_write() handles with commit()/abort().

    Args:
        store: The storage engine (see store.GraphStore).
        query_timeout: Seconds a read may take; None disables the bound.
        max_concurrent_reads: Size of the worker pool reads run on.
    """

    def __init__(self, store: Any, query_timeout: float | None = 30.0,
                 max_concurrent_reads: int = 8):
        self._store = store
        self._timeout = query_timeout
        self._write_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(
            max_workers=max_concurrent_reads, thread_name_prefix="sparql-read",
        )

    @property
    def query_timeout(self) -> float | None:
        return self._timeout

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # =========================================================================
    # Read path
    # =========================================================================

    def read(self, query: Any, accept: str | None = None) -> SparqlResult:
        """
        Execute *query* in a read transaction and render it for *accept*.

        Raises:
            UnsupportedOperationType: for a query form outside ASK/SELECT/DESCRIBE/CONSTRUCT.
            QueryTimeoutError: when the read outlives the configured timeout.
        """
        negotiation = negotiate(accept, result_shape(query))
        txn = self._store.begin_read()

        def run() -> SparqlResult:
            return negotiation.render(txn.execute_query(query))

        try:
            future = self._pool.submit(run)
        except BaseException:
            txn.abort()
            raise

        try:
            rendered = future.result(timeout=self._timeout)
        except (FutureTimeout, CancelledError) as exc:
            future.cancel()
            txn.abort()
            logger.warning("Read aborted after %ss timeout", self._timeout)
            raise QueryTimeoutError(
                f"query exceeded {self._timeout}s timeout"
            ) from exc
        except BaseException:
            txn.abort()
            raise

        txn.commit()
        return rendered

    # =========================================================================
    # Write path
    # =========================================================================

    def write(self, update: Any) -> None:
        """Execute a prepared update in one write transaction."""
        with self._write_lock:
            txn = self._store.begin_write()
            try:
                txn.execute_update(update)
            except BaseException:
                txn.abort()
                raise
            txn.commit()

    def insert(self, graph: str, triples: Iterable[tuple]) -> None:
        """INSERT DATA { GRAPH <graph> { triples } } in one write transaction."""
        with self._write_lock:
            txn = self._store.begin_write()
            try:
                size = txn.bulk_insert(graph, triples)
            except BaseException:
                txn.abort()
                raise
            txn.commit()
        logger.debug("Inserted into <%s>, graph now holds %s triples", graph, size)
