#!/usr/bin/env python3
"""Print the recent status transitions of a bridge as JSON."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

import psycopg2
from dotenv import load_dotenv

from .history import DEFAULT_HISTORY_TABLE, connect, ensure_schema, fetch_history, sanitize_table_name

LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
DEFAULT_HOURS = 24


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Query the bridge status history table for one bridge."
    )
    parser.add_argument("--id", dest="bridge_id", default="", help="Bridge identifier (required).")
    parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_LIMIT,
        help=f"Maximum number of rows (default: {DEFAULT_LIMIT}).",
    )
    parser.add_argument(
        "--hours",
        type=int,
        default=DEFAULT_HOURS,
        help=f"Only rows recorded within this many hours (default: {DEFAULT_HOURS}).",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("DATABASE_URL"),
        help="PostgreSQL connection string. Defaults to DATABASE_URL env var.",
    )
    parser.add_argument(
        "--history-table",
        default=os.getenv("HISTORY_TABLE", DEFAULT_HISTORY_TABLE),
        help=f"History table name (default: HISTORY_TABLE env var or {DEFAULT_HISTORY_TABLE}).",
    )
    return parser.parse_args(argv)


def run_query(args: argparse.Namespace) -> tuple[int, object]:
    """Return an exit code and the JSON payload to print."""
    bridge_id = (args.bridge_id or "").strip()
    if not bridge_id:
        return 2, {"error": 'Parameter "id" is required.'}

    limit = args.limit if args.limit and args.limit > 0 else DEFAULT_LIMIT
    hours = args.hours if args.hours and args.hours > 0 else DEFAULT_HOURS
    table = sanitize_table_name(args.history_table)

    if not args.database_url:
        LOGGER.error("Database URL not provided. Use --database-url or set DATABASE_URL env var.")
        return 1, {"error": "Could not load history."}

    try:
        conn = connect(args.database_url)
        try:
            ensure_schema(conn, table)
            history = fetch_history(conn, bridge_id, table, limit=limit, hours=hours)
        finally:
            conn.close()
    except psycopg2.Error:
        LOGGER.exception("Failed to query history for bridge %s", bridge_id)
        return 1, {"error": "Could not load history."}

    return 0, history


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(message)s")

    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(dotenv_path=project_root / ".env")

    args = parse_args(argv)
    code, payload = run_query(args)
    json.dump(payload, sys.stdout, indent=2)
    sys.stdout.write("\n")
    if code:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
