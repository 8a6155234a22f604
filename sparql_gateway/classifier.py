"""
SPARQL Gateway - Operation classifier.
Turns raw operation text into exactly one of a read or an update operation.
The query grammar is tried first, then the update grammar; text accepted by
neither is rejected, never silently turned into a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from rdflib.plugins.sparql import prepareQuery, prepareUpdate
from rdflib.plugins.sparql.sparql import Query, Update

from ._utils import abbreviate
from .errors import ParseError

logger = logging.getLogger("sparql_gateway.classifier")

__all__ = ["OperationKind", "Operation", "classify"]


class OperationKind(Enum):
    READ = "read"
    UPDATE = "update"


@dataclass(frozen=True)
class Operation:
    """A classified operation. `ast` is an rdflib Query or Update."""

    raw_text: str
    kind: OperationKind
    ast: Query | Update

    @property
    def is_read(self) -> bool:
        return self.kind is OperationKind.READ


def _describe(exc: Exception) -> str:
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


def classify(text: str | None, read_only: bool = False) -> Operation:
    """
    Classify *text* as a read or an update operation.

    Args:
        text: Raw SPARQL text.
        read_only: When True only the query grammar is tried (public endpoint).

    Raises:
        ParseError: carrying the last parser diagnostic when no grammar accepts it.
    """
    if text is None or not text.strip():
        raise ParseError("empty operation")

    try:
        query = prepareQuery(text)
    except Exception as exc:
        query_error = exc
    else:
        return Operation(raw_text=text, kind=OperationKind.READ, ast=query)

    if read_only:
        logger.debug("Rejected non-query on read-only path: %s", abbreviate(text))
        raise ParseError(_describe(query_error)) from query_error

    try:
        update = prepareUpdate(text)
    except Exception as exc:
        logger.debug("Unparseable operation: %s", abbreviate(text))
        raise ParseError(_describe(exc)) from exc

    if not update.algebra:
        raise ParseError("update request contains no operation")

    return Operation(raw_text=text, kind=OperationKind.UPDATE, ast=update)
