#!/usr/bin/env python3
"""Match NDW bridge openings to known bridges, write the status snapshot and log transitions."""
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import tempfile
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Sequence

import psycopg2
from dotenv import load_dotenv

from .bridges import Bridge, append_issue_log, load_bridges
from .history import DEFAULT_HISTORY_TABLE, TransitionLogger, connect, ensure_schema, sanitize_table_name
from .poll_ndw import FeedError, FeedSituation, fetch_situations, resolve_feed_url
from .situations import BridgeState, MatchMode, build_situation_index, evaluate_bridge

LOGGER = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path("data")


class MissingIdPolicy(str, Enum):
    LOG = "log"
    IGNORE = "ignore"


@dataclass
class RunSummary:
    bridges: int = 0
    situations: int = 0
    retained: int = 0
    statuses: Counter = field(default_factory=Counter)
    transitions: Counter = field(default_factory=Counter)
    missing_ids: int = 0


def _env_float(name: str) -> float | None:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise SystemExit(f"Invalid {name} value: {raw!r}. Provide a numeric value.") from exc


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Derive movable-bridge status from the NDW feed and record status history."
    )
    parser.add_argument(
        "--bridges",
        default=os.getenv("BRIDGES_JSON", str(DEFAULT_DATA_DIR / "bruggen.json")),
        help="Bridge list JSON (default: BRIDGES_JSON env var or data/bruggen.json).",
    )
    parser.add_argument(
        "--output",
        default=os.getenv("BRIDGES_OUTPUT", str(DEFAULT_DATA_DIR / "bruggen_open.json")),
        help="Snapshot JSON written for the dashboard (default: data/bruggen_open.json).",
    )
    parser.add_argument(
        "--bad-bridges-log",
        default=os.getenv("BAD_BRIDGES_LOG", str(DEFAULT_DATA_DIR / "foute_bruggen.log")),
        help="File that collects invalid bridge entries (default: data/foute_bruggen.log).",
    )
    parser.add_argument(
        "--missing-ids-file",
        default=os.getenv("MISSING_NDW_FILE", str(DEFAULT_DATA_DIR / "ontbrekende_ndw_ids.json")),
        help="JSON file listing bridge NDW ids absent from the feed.",
    )
    parser.add_argument(
        "--feed-url",
        help="NDW feed URL. Defaults to NDW_FEED_URL env var or the public NDW endpoint.",
    )
    parser.add_argument(
        "--http-timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for the feed response (default: 30).",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("DATABASE_URL"),
        help="PostgreSQL connection string. Defaults to DATABASE_URL env var; history is skipped when absent.",
    )
    parser.add_argument(
        "--history-table",
        default=os.getenv("HISTORY_TABLE", DEFAULT_HISTORY_TABLE),
        help=f"Status history table (default: {DEFAULT_HISTORY_TABLE}).",
    )
    parser.add_argument(
        "--match-mode",
        choices=[mode.value for mode in MatchMode],
        default=os.getenv("MATCH_MODE", MatchMode.COORDINATES.value),
        help="Match situations by rounded coordinates or by NDW id (default: coordinates).",
    )
    parser.add_argument(
        "--missing-id-policy",
        choices=[policy.value for policy in MissingIdPolicy],
        default=os.getenv("MISSING_NDW_POLICY", MissingIdPolicy.LOG.value),
        help=(
            "Record bridge NDW ids that do not occur anywhere in the feed, or ignore them "
            "(default: log). Situations older than the retention window still count as present."
        ),
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between runs. If omitted, run once and exit.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Execute a single run even if --interval is provided.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and derive statuses without writing the snapshot or history.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Python logging level (default: INFO).",
    )
    return parser.parse_args(argv)


def atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", dir=path.parent, delete=False, suffix=".tmp", encoding="utf-8"
    ) as fh:
        temp_path = fh.name
        try:
            json.dump(data, fh, indent=2, ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError):
            fh.close()
            os.unlink(temp_path)
            raise
    os.replace(temp_path, path)


def load_missing_ids(path: Path) -> dict[str, dict[str, Any]]:
    if not path.exists():
        return {}
    try:
        decoded = json.loads(path.read_text(encoding="utf-8"))
    except ValueError:
        LOGGER.warning("Ignoring unreadable missing-id file %s", path)
        return {}
    if not isinstance(decoded, list):
        return {}
    entries: dict[str, dict[str, Any]] = {}
    for entry in decoded:
        if isinstance(entry, dict) and entry.get("ndwID"):
            entries[str(entry["ndwID"])] = entry
    return entries


def remember_missing_id(
    entries: dict[str, dict[str, Any]],
    ndw_id: str,
    bridge: Bridge,
    now: datetime,
) -> bool:
    if not ndw_id or ndw_id in entries:
        return False
    entries[ndw_id] = {
        "ndwID": ndw_id,
        "bridgeId": bridge.id,
        "latitude": bridge.latitude,
        "longitude": bridge.longitude,
        "name": bridge.name,
        "firstSeen": now.isoformat(timespec="seconds"),
    }
    LOGGER.info("NDW id %s of bridge %s (%s) does not occur in the feed", ndw_id, bridge.id, bridge.name)
    return True


def find_missing_ids(
    bridges: Iterable[Bridge],
    feed_situations: Iterable[FeedSituation],
) -> list[tuple[Bridge, str]]:
    known = {situation.ndw_id for situation in feed_situations if situation.ndw_id}
    return [
        (bridge, ndw_id)
        for bridge in bridges
        for ndw_id in bridge.correlation_ids
        if ndw_id not in known
    ]


def open_transition_logger(database_url: str | None, table: str) -> TransitionLogger:
    """Return a logger bound to the store, or a no-op logger when it is unreachable."""
    if not database_url:
        LOGGER.warning("No database configured; status history will not be recorded.")
        return TransitionLogger(None, table)
    try:
        conn = connect(database_url)
        ensure_schema(conn, table)
    except psycopg2.Error as exc:
        LOGGER.warning("Database unavailable; status history will not be recorded: %s", exc)
        return TransitionLogger(None, table)
    return TransitionLogger(conn, table)


def close_transition_logger(transitions: TransitionLogger) -> None:
    if transitions.conn is not None:
        try:
            transitions.conn.close()
        except psycopg2.Error:
            LOGGER.debug("Ignoring error while closing history connection", exc_info=True)
        transitions.conn = None


def record_transitions(
    transitions: TransitionLogger,
    states: Sequence[BridgeState],
    now: datetime,
) -> Counter:
    outcomes: Counter = Counter()
    if not transitions.enabled:
        return outcomes
    for state in states:
        try:
            outcome = transitions.record(state.bridge.id, state.status, state.derived.status_moment, now=now)
        except psycopg2.Error:
            LOGGER.exception(
                "Failed to record status for bridge %s; disabling history for this run.",
                state.bridge.id,
            )
            close_transition_logger(transitions)
            break
        outcomes[outcome.value] += 1
    return outcomes


def run_iteration(
    args: argparse.Namespace,
    transitions: TransitionLogger,
    now: datetime | None = None,
    feed_situations: Sequence[FeedSituation] | None = None,
) -> RunSummary:
    """Execute one batch run. Raises FeedError when the feed is unavailable."""
    registry = load_bridges(Path(args.bridges))
    if registry.issues and not args.dry_run:
        append_issue_log(Path(args.bad_bridges_log), registry.issues)

    if feed_situations is None:
        feed_situations = fetch_situations(resolve_feed_url(args.feed_url), args.http_timeout)
    now = now or datetime.now(timezone.utc)
    mode = MatchMode(args.match_mode)

    index = build_situation_index(feed_situations, now, mode)
    states = [evaluate_bridge(bridge, index, mode, now) for bridge in registry.bridges]

    summary = RunSummary(
        bridges=len(states),
        situations=len(feed_situations),
        retained=sum(len(candidates) for candidates in index.values()),
        statuses=Counter(state.status.value for state in states),
    )

    if MissingIdPolicy(args.missing_id_policy) is MissingIdPolicy.LOG:
        missing_path = Path(args.missing_ids_file)
        entries = load_missing_ids(missing_path)
        for bridge, ndw_id in find_missing_ids(registry.bridges, feed_situations):
            if remember_missing_id(entries, ndw_id, bridge, now):
                summary.missing_ids += 1
        if not args.dry_run:
            atomic_write_json(missing_path, list(entries.values()))

    if args.dry_run:
        LOGGER.info("Dry run: skipping snapshot and history writes.")
    else:
        summary.transitions = record_transitions(transitions, states, now)
        atomic_write_json(Path(args.output), [state.as_record() for state in states])

    LOGGER.info(
        "Processed %d bridges against %d situations (%d retained, mode=%s): statuses=%s transitions=%s new missing ids=%d",
        summary.bridges,
        summary.situations,
        summary.retained,
        mode.value,
        dict(summary.statuses),
        dict(summary.transitions),
        summary.missing_ids,
    )
    return summary


def main(argv: Sequence[str] | None = None) -> None:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(dotenv_path=project_root / ".env")

    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    if args.interval is None:
        args.interval = _env_float("POLL_INTERVAL")
    if args.interval is not None and args.interval <= 0:
        raise SystemExit("Polling interval must be greater than zero.")

    table = sanitize_table_name(args.history_table)
    transitions = TransitionLogger(None, table)
    if not args.dry_run:
        transitions = open_transition_logger(args.database_url, table)

    def _handle_shutdown(signum, frame):
        LOGGER.info("Received signal %s; shutting down bridge poller.", signum)
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    interval_value = max(args.interval, 1.0) if args.interval is not None else None
    if interval_value is not None and not args.once:
        LOGGER.info("Entering polling loop (interval=%ss)", interval_value)

    try:
        first_cycle = True
        while True:
            if not first_cycle:
                LOGGER.debug("Sleeping %.2fs before next run.", interval_value)
                time.sleep(interval_value)
                if not transitions.enabled and args.database_url and not args.dry_run:
                    transitions = open_transition_logger(args.database_url, table)
            first_cycle = False

            try:
                run_iteration(args, transitions)
            except FeedError as exc:
                LOGGER.error("Feed unavailable; no snapshot written: %s", exc)
                if args.once or interval_value is None:
                    raise SystemExit(1) from exc

            if args.once or args.dry_run or interval_value is None:
                break
    finally:
        close_transition_logger(transitions)


if __name__ == "__main__":
    main()
