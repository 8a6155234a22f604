"""
SPARQL Gateway - Format negotiation and serialization.

Maps a requested content type to a concrete rdflib serialization. Graph
results (DESCRIBE/CONSTRUCT) and tabular results (ASK/SELECT) are not
mutually serializable, so rendering is a two-level cascade:

  1. the serialization matching the request (exact content-type match),
  2. on any rendering error, exactly once, the fixed default for the shape
     (results-JSON for ASK/SELECT, Turtle for DESCRIBE/CONSTRUCT).

If the default fails too, the error propagates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from rdflib.util import guess_format

logger = logging.getLogger("sparql_gateway.formats")

__all__ = [
    "ResultShape",
    "Serialization",
    "SparqlResult",
    "Negotiation",
    "SerializationError",
    "SERIALIZATIONS",
    "DEFAULTS",
    "negotiate",
    "parse_accept",
    "lookup",
    "rdf_format_for",
    "QUAD_FORMATS",
]


class ResultShape(Enum):
    ASK = "ASK"
    SELECT = "SELECT"
    DESCRIBE = "DESCRIBE"
    CONSTRUCT = "CONSTRUCT"

    @property
    def is_graph(self) -> bool:
        return self in (ResultShape.DESCRIBE, ResultShape.CONSTRUCT)


_GRAPH_SHAPES = frozenset({ResultShape.DESCRIBE, ResultShape.CONSTRUCT})


class SerializationError(Exception):
    """A serialization cannot render a result of the given shape."""


@dataclass(frozen=True)
class SparqlResult:
    """Rendered result: the content type actually used and the body bytes."""

    content_type: str
    body: bytes


@dataclass(frozen=True)
class Serialization:
    """A registered serialization: content type, rdflib plugin name, shapes it renders."""

    name: str
    content_type: str
    rdflib_format: str
    shapes: frozenset[ResultShape]

    @property
    def is_graph(self) -> bool:
        return self.shapes <= _GRAPH_SHAPES

    def render(self, result: Any, shape: ResultShape) -> bytes:
        """Serialize an rdflib query result. Raises on any incompatibility."""
        if shape not in self.shapes:
            raise SerializationError(
                f"{self.content_type} cannot render a {shape.value} result"
            )
        if self.is_graph:
            body = result.graph.serialize(format=self.rdflib_format, encoding="utf-8")
        else:
            body = result.serialize(format=self.rdflib_format, encoding="utf-8")
        if isinstance(body, str):
            body = body.encode("utf-8")
        return body


_TABULAR = frozenset({ResultShape.ASK, ResultShape.SELECT})
_SELECT_ONLY = frozenset({ResultShape.SELECT})

TURTLE = Serialization("turtle", "text/turtle", "turtle", _GRAPH_SHAPES)
RESULTS_JSON = Serialization(
    "results-json", "application/sparql-results+json", "json", _TABULAR,
)

SERIALIZATIONS: tuple[Serialization, ...] = (
    TURTLE,
    Serialization("n-triples", "application/n-triples", "nt", _GRAPH_SHAPES),
    Serialization("rdf-xml", "application/rdf+xml", "xml", _GRAPH_SHAPES),
    Serialization("json-ld", "application/ld+json", "json-ld", _GRAPH_SHAPES),
    Serialization("n3", "text/n3", "n3", _GRAPH_SHAPES),
    Serialization("trig", "application/trig", "trig", _GRAPH_SHAPES),
    RESULTS_JSON,
    Serialization("results-xml", "application/sparql-results+xml", "xml", _TABULAR),
    Serialization("results-csv", "text/csv", "csv", _SELECT_ONLY),
    Serialization("results-text", "text/plain", "txt", _SELECT_ONLY),
)

_BY_CONTENT_TYPE: dict[str, Serialization] = {s.content_type: s for s in SERIALIZATIONS}

DEFAULTS: dict[ResultShape, Serialization] = {
    ResultShape.ASK: RESULTS_JSON,
    ResultShape.SELECT: RESULTS_JSON,
    ResultShape.DESCRIBE: TURTLE,
    ResultShape.CONSTRUCT: TURTLE,
}


def parse_accept(accept: str | None) -> list[str]:
    """
    Split an Accept header into bare media types, highest q-value first.
    Parameters other than q are dropped; ties keep header order; q=0 is excluded.
    """
    if not accept:
        return []
    ranked: list[tuple[float, int, str]] = []
    for position, part in enumerate(accept.split(",")):
        pieces = [p.strip() for p in part.split(";")]
        media = pieces[0].lower()
        if not media:
            continue
        q = 1.0
        for param in pieces[1:]:
            key, _, value = param.partition("=")
            if key.strip().lower() == "q":
                try:
                    q = float(value)
                except ValueError:
                    q = 0.0
        if q <= 0:
            continue
        ranked.append((-q, position, media))
    ranked.sort()
    return [media for _, _, media in ranked]


def lookup(content_type: str | None) -> Serialization | None:
    """Exact content-type match against the registry, or None."""
    for media in parse_accept(content_type):
        found = _BY_CONTENT_TYPE.get(media)
        if found is not None:
            return found
    return None


@dataclass(frozen=True)
class Negotiation:
    """Outcome of negotiation: the selected serialization and its shape default."""

    shape: ResultShape
    serialization: Serialization
    default: Serialization

    def render(self, result: Any) -> SparqlResult:
        try:
            body = self.serialization.render(result, self.shape)
            return SparqlResult(self.serialization.content_type, body)
        except Exception as exc:
            if self.serialization == self.default:
                raise
            logger.warning(
                "Rendering %s as %s failed (%s), falling back to %s",
                self.shape.value, self.serialization.content_type, exc,
                self.default.content_type,
            )
        # Fallback is final: errors from the default propagate.
        body = self.default.render(result, self.shape)
        return SparqlResult(self.default.content_type, body)


def negotiate(requested_content_type: str | None, shape: ResultShape) -> Negotiation:
    """Pick a serialization for *shape*. Unknown types select the shape default."""
    default = DEFAULTS[shape]
    selected = lookup(requested_content_type) or default
    return Negotiation(shape=shape, serialization=selected, default=default)


# =========================================================================
# Ingestion syntaxes (file extension -> rdflib parser)
# =========================================================================

_PARSABLE = frozenset({"xml", "n3", "turtle", "nt", "trix", "nquads", "trig", "json-ld", "hext"})

QUAD_FORMATS = frozenset({"nquads", "trig", "trix"})


def rdf_format_for(file_name: str) -> str | None:
    """Guess the rdflib parser for *file_name* from its extension."""
    fmt = guess_format(file_name)
    if fmt not in _PARSABLE:
        return None
    return fmt
