"""
SPARQL Gateway CLI.
Usage:
    sparql-gateway serve [--host H] [--port P]     Run the HTTP endpoint (uvicorn)
    sparql-gateway watch                           Drain the ingest directory until stopped
    sparql-gateway query "<SPARQL>" [--accept T]   Run a read query, print the body
    sparql-gateway update "<SPARQL>"               Submit an update and wait for it
    sparql-gateway ingest <path>...                Ingest files (or a directory)
    sparql-gateway stats                           Show store and channel statistics

All commands accept --config PATH (default: $SPARQL_GATEWAY_CONFIG or
./sparql-gateway.config.json).
"""

import argparse
import json
import sys
from pathlib import Path

from .config import load_config
from .errors import GatewayError
from .gateway import SparqlGateway


def _gateway(args) -> SparqlGateway:
    return SparqlGateway(load_config(args.config))


def cmd_serve(args):
    import uvicorn

    from .web import create_app

    gateway = _gateway(args)
    cfg = gateway.config
    uvicorn.run(
        create_app(gateway),
        host=args.host or cfg.host,
        port=args.port or cfg.port,
        log_level=cfg.log_level.lower(),
    )


def cmd_watch(args):
    gateway = _gateway(args)
    if gateway.config.ingest_directory is None:
        print("ingest_directory is not configured.", file=sys.stderr)
        sys.exit(1)
    gateway.run_forever()


def cmd_query(args):
    gateway = _gateway(args)
    try:
        result = gateway.query(args.sparql, accept=args.accept)
    finally:
        gateway.stop()
    sys.stdout.write(result.body.decode("utf-8"))
    if not result.body.endswith(b"\n"):
        sys.stdout.write("\n")


def cmd_update(args):
    gateway = _gateway(args)
    gateway.start()
    try:
        accepted = gateway.submit_update(args.sparql)
        gateway.join()
    finally:
        gateway.stop()
    failed = len(gateway.failures.records())
    print(json.dumps({"correlation_id": accepted.correlation_id,
                      "failure_records": failed}, indent=2))


def cmd_ingest(args):
    gateway = _gateway(args)
    exit_code = 0
    try:
        for raw in args.paths:
            path = Path(raw)
            if path.is_dir():
                reports = gateway.loader.ingest_directory(path)
                for report in reports:
                    print(json.dumps(report.__dict__, indent=2))
                continue
            try:
                report = gateway.ingest_file(path)
            except (GatewayError, OSError) as e:
                print(f"{path}: {e}", file=sys.stderr)
                exit_code = 1
                continue
            print(json.dumps(report.__dict__, indent=2))
    finally:
        gateway.stop()
    sys.exit(exit_code)


def cmd_stats(args):
    gateway = _gateway(args)
    try:
        print(json.dumps(gateway.stats(), indent=2, default=str))
    finally:
        gateway.stop()


def main():
    parser = argparse.ArgumentParser(
        prog="sparql-gateway",
        description="SPARQL gateway with asynchronous updates and bulk ingestion",
    )
    parser.add_argument("--config", default=None, help="Config file path")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP endpoint")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)

    sub.add_parser("watch", help="Drain the ingest directory until stopped")

    p_query = sub.add_parser("query", help="Run a read query")
    p_query.add_argument("sparql", help="SPARQL query string")
    p_query.add_argument("--accept", default=None, help="Result content type")

    p_update = sub.add_parser("update", help="Submit an update and wait for it")
    p_update.add_argument("sparql", help="SPARQL update string")

    p_ingest = sub.add_parser("ingest", help="Ingest files or a directory")
    p_ingest.add_argument("paths", nargs="+")

    sub.add_parser("stats", help="Show statistics")

    args = parser.parse_args()
    dispatch = {
        "serve": cmd_serve,
        "watch": cmd_watch,
        "query": cmd_query,
        "update": cmd_update,
        "ingest": cmd_ingest,
        "stats": cmd_stats,
    }

    try:
        dispatch[args.command](args)
    except GatewayError as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
