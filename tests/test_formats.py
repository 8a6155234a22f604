"""Tests for content negotiation and the serialization cascade."""

import json
from unittest.mock import MagicMock

import pytest
from rdflib import Graph, Literal, URIRef

from sparql_gateway.formats import (
    DEFAULTS,
    RESULTS_JSON,
    SERIALIZATIONS,
    TURTLE,
    Negotiation,
    ResultShape,
    SerializationError,
    lookup,
    negotiate,
    parse_accept,
    rdf_format_for,
)

A, B, C = URIRef("urn:a"), URIRef("urn:b"), URIRef("urn:c")


@pytest.fixture
def graph():
    g = Graph()
    g.add((A, B, C))
    g.add((A, B, Literal("x")))
    return g


# =========================================================================
# Accept header parsing
# =========================================================================

class TestParseAccept:
    def test_empty(self):
        assert parse_accept(None) == []
        assert parse_accept("") == []

    def test_q_ordering(self):
        ranked = parse_accept("text/csv;q=0.5, text/turtle, application/ld+json;q=0.8")
        assert ranked == ["text/turtle", "application/ld+json", "text/csv"]

    def test_ties_keep_header_order(self):
        assert parse_accept("text/n3, text/turtle") == ["text/n3", "text/turtle"]

    def test_parameters_stripped(self):
        assert parse_accept("text/turtle; charset=utf-8") == ["text/turtle"]

    def test_q_zero_excluded(self):
        assert parse_accept("text/turtle;q=0, text/csv") == ["text/csv"]

    def test_case_insensitive(self):
        assert parse_accept("Text/Turtle") == ["text/turtle"]


class TestLookup:
    def test_exact_match(self):
        assert lookup("text/turtle") is TURTLE

    def test_first_registered_match_wins(self):
        assert lookup("text/unknown, application/sparql-results+json") is RESULTS_JSON

    def test_wildcards_do_not_match(self):
        assert lookup("*/*") is None

    def test_every_serialization_is_registered_by_content_type(self):
        for s in SERIALIZATIONS:
            assert lookup(s.content_type) is s


# =========================================================================
# Negotiation
# =========================================================================

class TestNegotiate:
    @pytest.mark.parametrize("shape", list(ResultShape))
    def test_unknown_type_selects_default(self, shape):
        n = negotiate("text/plain-unsupported", shape)
        assert n.serialization is DEFAULTS[shape]
        assert n.default is DEFAULTS[shape]

    def test_defaults(self):
        assert DEFAULTS[ResultShape.ASK] is RESULTS_JSON
        assert DEFAULTS[ResultShape.SELECT] is RESULTS_JSON
        assert DEFAULTS[ResultShape.DESCRIBE] is TURTLE
        assert DEFAULTS[ResultShape.CONSTRUCT] is TURTLE

    @pytest.mark.parametrize("accept", [
        None, "text/turtle", "text/csv", "application/sparql-results+xml", "bogus/type",
    ])
    @pytest.mark.parametrize("shape", list(ResultShape))
    def test_deterministic(self, accept, shape):
        assert negotiate(accept, shape) == negotiate(accept, shape)


class TestRender:
    def test_ask_json(self, graph):
        result = graph.query("ASK { ?s ?p ?o }")
        out = negotiate("application/sparql-results+json", ResultShape.ASK).render(result)
        assert out.content_type == "application/sparql-results+json"
        assert json.loads(out.body)["boolean"] is True

    def test_ask_as_csv_falls_back_to_json(self, graph):
        result = graph.query("ASK { ?s ?p ?o }")
        out = negotiate("text/csv", ResultShape.ASK).render(result)
        assert out.content_type == "application/sparql-results+json"
        assert b"boolean" in out.body

    def test_select_csv(self, graph):
        result = graph.query("SELECT ?s ?o WHERE { ?s ?p ?o }")
        out = negotiate("text/csv", ResultShape.SELECT).render(result)
        assert out.content_type == "text/csv"
        assert out.body.splitlines()[0].decode() == "s,o"

    def test_select_xml(self, graph):
        result = graph.query("SELECT ?s WHERE { ?s ?p ?o }")
        out = negotiate("application/sparql-results+xml", ResultShape.SELECT).render(result)
        assert out.content_type == "application/sparql-results+xml"
        assert b"urn:a" in out.body

    def test_construct_turtle(self, graph):
        result = graph.query("CONSTRUCT { ?s ?p ?o } WHERE { ?s ?p ?o }")
        out = negotiate("text/turtle", ResultShape.CONSTRUCT).render(result)
        assert out.content_type == "text/turtle"
        parsed = Graph().parse(data=out.body, format="turtle")
        assert (A, B, C) in parsed

    def test_construct_ntriples(self, graph):
        result = graph.query("CONSTRUCT { ?s ?p ?o } WHERE { ?s ?p ?o }")
        out = negotiate("application/n-triples", ResultShape.CONSTRUCT).render(result)
        assert out.content_type == "application/n-triples"
        assert b"<urn:a> <urn:b> <urn:c> ." in out.body

    def test_construct_as_tabular_falls_back_to_turtle(self, graph):
        result = graph.query("CONSTRUCT { ?s ?p ?o } WHERE { ?s ?p ?o }")
        out = negotiate("application/sparql-results+json", ResultShape.CONSTRUCT).render(result)
        assert out.content_type == "text/turtle"
        assert (A, B, C) in Graph().parse(data=out.body, format="turtle")

    def test_describe_jsonld(self, graph):
        result = graph.query("DESCRIBE <urn:a>")
        out = negotiate("application/ld+json", ResultShape.DESCRIBE).render(result)
        assert out.content_type == "application/ld+json"
        json.loads(out.body)

    def test_shape_mismatch_raises_in_serialization(self, graph):
        result = graph.query("ASK { ?s ?p ?o }")
        with pytest.raises(SerializationError):
            TURTLE.render(result, ResultShape.ASK)


class TestFallbackDepth:
    """Fallback is exactly one level deep."""

    def _serialization(self, content_type, error=None, body=b"ok"):
        s = MagicMock()
        s.content_type = content_type
        if error is not None:
            s.render.side_effect = error
        else:
            s.render.return_value = body
        return s

    def test_default_used_once_after_failure(self):
        selected = self._serialization("text/csv", error=SerializationError("no"))
        default = self._serialization("application/sparql-results+json", body=b"{}")
        n = Negotiation(ResultShape.ASK, selected, default)
        out = n.render(object())
        assert out.content_type == "application/sparql-results+json"
        assert out.body == b"{}"
        assert selected.render.call_count == 1
        assert default.render.call_count == 1

    def test_failing_default_propagates_without_second_fallback(self):
        selected = self._serialization("text/csv", error=SerializationError("first"))
        default = self._serialization("application/sparql-results+json",
                                      error=RuntimeError("second"))
        n = Negotiation(ResultShape.SELECT, selected, default)
        with pytest.raises(RuntimeError, match="second"):
            n.render(object())
        assert selected.render.call_count == 1
        assert default.render.call_count == 1

    def test_selected_default_is_not_retried(self):
        default = self._serialization("text/turtle", error=RuntimeError("boom"))
        n = Negotiation(ResultShape.CONSTRUCT, default, default)
        with pytest.raises(RuntimeError):
            n.render(object())
        assert default.render.call_count == 1


# =========================================================================
# Ingestion syntaxes
# =========================================================================

class TestRdfFormatFor:
    @pytest.mark.parametrize("name,fmt", [
        ("people.ttl", "turtle"),
        ("people.nt", "nt"),
        ("people.rdf", "xml"),
        ("people.owl", "xml"),
        ("people.jsonld", "json-ld"),
        ("people.nq", "nquads"),
        ("people.trig", "trig"),
        ("people.n3", "n3"),
    ])
    def test_known(self, name, fmt):
        assert rdf_format_for(name) == fmt

    @pytest.mark.parametrize("name", ["notes.txt", "page.html", "noext"])
    def test_unknown(self, name):
        assert rdf_format_for(name) is None
