"""
SPARQL Gateway - HTTP surface.
FastAPI app exposing the SPARQL protocol endpoints:

  GET|POST /sparql          query= or update=, Accept drives the response format
  GET|POST /public/sparql   read-only, no role check

Parameters come from the query string, a form-encoded body, or a raw
application/sparql-query / application/sparql-update body.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from urllib.parse import parse_qs

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool

from .errors import (
    AuthorizationError,
    GatewayError,
    ParseError,
    QueryTimeoutError,
    UnsupportedOperationType,
)
from .gateway import SparqlGateway, UpdateAccepted
from .security import ANONYMOUS, Principal

logger = logging.getLogger("sparql_gateway.web")

__all__ = ["create_app", "status_for"]

_FORM = "application/x-www-form-urlencoded"
_SPARQL_QUERY = "application/sparql-query"
_SPARQL_UPDATE = "application/sparql-update"

PrincipalResolver = Callable[[Request], Principal]


def status_for(exc: Exception) -> int:
    if isinstance(exc, (ParseError, UnsupportedOperationType)):
        return 400
    if isinstance(exc, AuthorizationError):
        return 403
    if isinstance(exc, QueryTimeoutError):
        return 503
    return 500


def _request_principal(request: Request) -> Principal:
    """Principal placed on request.state by the authentication layer, if any."""
    return getattr(request.state, "principal", None) or ANONYMOUS


async def _operation_params(request: Request) -> tuple[str | None, str | None]:
    query = request.query_params.get("query")
    update = request.query_params.get("update")
    if request.method != "POST":
        return query, update

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    body = await request.body()
    if content_type == _FORM:
        form = parse_qs(body.decode("utf-8"), keep_blank_values=True)
        if query is None and "query" in form:
            query = form["query"][0]
        if update is None and "update" in form:
            update = form["update"][0]
    elif content_type == _SPARQL_QUERY:
        query = body.decode("utf-8")
    elif content_type == _SPARQL_UPDATE:
        update = body.decode("utf-8")
    return query, update


def create_app(
    gateway: SparqlGateway,
    principal_resolver: PrincipalResolver = _request_principal,
) -> FastAPI:
    """Build the app. The gateway is started and stopped with the app lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gateway.start()
        try:
            yield
        finally:
            await run_in_threadpool(gateway.stop)

    app = FastAPI(
        title="SPARQL Gateway",
        description="SPARQL protocol endpoint with asynchronous, resilient updates",
        lifespan=lifespan,
    )
    app.state.gateway = gateway

    async def dispatch(request: Request, read_only: bool) -> Response:
        query, update = await _operation_params(request)
        if query is not None and update is not None:
            return JSONResponse(
                {"error": "query and update are mutually exclusive"}, status_code=400,
            )
        text = query if query is not None else update
        if text is None:
            return Response(status_code=204)

        principal = principal_resolver(request)
        accept = request.headers.get("accept")
        try:
            outcome = await run_in_threadpool(
                gateway.execute, text, accept, principal, read_only,
            )
        except GatewayError as e:
            status = status_for(e)
            logger.info("SPARQL request rejected (%d): %s", status, e)
            return JSONResponse({"error": str(e)}, status_code=status)
        except Exception as e:
            logger.error("SPARQL request failed: %s", e, exc_info=True)
            return JSONResponse({"error": str(e)}, status_code=500)

        if isinstance(outcome, UpdateAccepted):
            return PlainTextResponse(
                outcome.message, status_code=202,
                headers={"X-Correlation-Id": outcome.correlation_id},
            )
        return Response(content=outcome.body, media_type=outcome.content_type)

    @app.api_route("/sparql", methods=["GET", "POST"], tags=["SPARQL"])
    async def sparql(request: Request) -> Response:
        """Execute a SPARQL query, or accept an update for asynchronous processing."""
        return await dispatch(request, read_only=False)

    @app.api_route("/public/sparql", methods=["GET", "POST"], tags=["SPARQL"])
    async def public_sparql(request: Request) -> Response:
        """Read-only SPARQL endpoint."""
        return await dispatch(request, read_only=True)

    return app
