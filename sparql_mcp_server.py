#!/usr/bin/env python3
"""
SPARQL Gateway -- MCP Server.

Exposes the gateway as MCP tools: read queries, asynchronous updates, file
ingestion and statistics. Uses FastMCP with stdio transport. The gateway is
built lazily from $SPARQL_GATEWAY_CONFIG (or ./sparql-gateway.config.json)
on the first tool call and started so that updates are processed.
"""

import logging
import threading

from mcp.server import FastMCP

from sparql_gateway.config import load_config
from sparql_gateway.gateway import SparqlGateway
from sparql_gateway.security import Principal

logger = logging.getLogger("sparql_mcp_server")

# ── Lazily built gateway ───────────────────────────────────────────────

_gateway: SparqlGateway | None = None
_gateway_lock = threading.Lock()


def _get_gateway() -> SparqlGateway:
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = SparqlGateway(load_config())
            _gateway.start()
        return _gateway


# ── FastMCP server ───────────────────────────────────────────────────────

mcp = FastMCP(
    "sparql-gateway",
    instructions=(
        "SPARQL gateway over a transactional RDF store. "
        "sparql_query runs ASK/SELECT/DESCRIBE/CONSTRUCT synchronously; "
        "sparql_update accepts an update for asynchronous execution and "
        "returns a correlation id; ingest_file loads RDF, .graph sidecars "
        "or .sparql scripts; gateway_stats reports store and queue state."
    ),
)


@mcp.tool(
    description="Run a read-only SPARQL query (ASK, SELECT, DESCRIBE, CONSTRUCT). "
    "Optional accept selects the result format, e.g. 'text/turtle' or "
    "'application/sparql-results+json'. Update text is rejected."
)
def sparql_query(query: str, accept: str = "") -> dict:
    """Run a SPARQL query."""
    try:
        result = _get_gateway().query(query, accept=accept or None)
        return {
            "content_type": result.content_type,
            "body": result.body.decode("utf-8"),
        }
    except Exception as e:
        return {"error": str(e), "tool": "sparql_query"}


@mcp.tool(
    description="Submit a SPARQL update (INSERT/DELETE/...). The update is "
    "queued and executed asynchronously; the result only means it was accepted. "
    "Set wait=true to block until the update queue is drained."
)
def sparql_update(update: str, wait: bool = False) -> dict:
    """Submit a SPARQL update."""
    try:
        gateway = _get_gateway()
        # stdio clients are the local operator, trusted with the update roles
        principal = Principal.of("mcp", gateway.config.allowed_update_roles)
        accepted = gateway.submit_update(update, principal=principal)
        out = {"status": accepted.message, "correlation_id": accepted.correlation_id}
        if wait:
            out["drained"] = gateway.join(timeout=60)
        return out
    except Exception as e:
        return {"error": str(e), "tool": "sparql_update"}


@mcp.tool(
    description="Ingest a file: '.graph' declares the target graph of the same-named "
    "data file, '.sparql' runs an update script, other RDF files are bulk loaded in batches."
)
def ingest_file(path: str) -> dict:
    """Ingest one file."""
    try:
        report = _get_gateway().ingest_file(path)
        return {
            "file_name": report.file_name,
            "kind": report.kind,
            "graph": report.graph,
            "triples": report.triples,
            "batches": report.batches,
            "correlation_id": report.correlation_id,
        }
    except Exception as e:
        return {"error": str(e), "tool": "ingest_file"}


@mcp.tool(
    description="Get gateway statistics: triples and named graphs in the store, "
    "queue depth and redelivery counters per channel, failure records."
)
def gateway_stats() -> dict:
    """Get gateway statistics."""
    try:
        return _get_gateway().stats()
    except Exception as e:
        return {"error": str(e), "tool": "gateway_stats"}


# ═════════════════════════════════════════════════════════════════════════
# Entry point
# ═════════════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    mcp.run(transport="stdio")
