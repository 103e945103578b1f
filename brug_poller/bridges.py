"""Load the static bridge list and report malformed entries."""
from __future__ import annotations

import json
import logging
import math
import pprint
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

LOGGER = logging.getLogger(__name__)

# Alternate spellings found in the various bruggen.json exports.
KEY_ALIASES: dict[str, str] = {
    "ISRS": "id",
    "Lat": "latitude",
    "Lon": "longitude",
    "Naam": "naam",
    "name": "naam",
    "region": "provincie",
    "Provincie": "provincie",
    "town": "stad",
    "Stad": "stad",
    "ndwid": "ndwID",
    "ndwIDs": "ndwID",
    "correlationIds": "ndwID",
}


@dataclass(frozen=True)
class Bridge:
    id: str
    latitude: float
    longitude: float
    name: str
    region: str = ""
    town: str = ""
    correlation_ids: tuple[str, ...] = ()


@dataclass
class RegistryIssue:
    index: int
    missing: list[str]
    record: Any


@dataclass
class BridgeRegistry:
    bridges: list[Bridge] = field(default_factory=list)
    issues: list[RegistryIssue] = field(default_factory=list)


def _is_numeric(value: object) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    try:
        number = float(value if isinstance(value, (int, float)) else str(value).strip())
    except (OverflowError, ValueError):
        return False
    # NaN and infinity cannot be written to the JSON snapshot.
    return math.isfinite(number)


def _clean(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_correlation_ids(value: object) -> tuple[str, ...]:
    """Return a deduplicated, ordered tuple of non-empty trimmed ids."""
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        candidates: Iterable[object] = value
    else:
        candidates = (value,)

    seen: set[str] = set()
    ids: list[str] = []
    for candidate in candidates:
        cleaned = _clean(candidate)
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            ids.append(cleaned)
    return tuple(ids)


def normalize_keys(item: dict[str, Any]) -> dict[str, Any]:
    normalized = dict(item)
    for alias, canonical in KEY_ALIASES.items():
        if alias in item:
            normalized[canonical] = item[alias]
    return normalized


def validate_bridge(item: dict[str, Any]) -> list[str]:
    """Return the required keys that are missing or invalid."""
    missing: list[str] = []
    if _clean(item.get("id")) == "":
        missing.append("id")
    for key in ("latitude", "longitude"):
        value = item.get(key)
        if value == "" or not _is_numeric(value):
            missing.append(key)
    if _clean(item.get("naam")) == "":
        missing.append("naam")
    return missing


def parse_bridges(raw: object) -> BridgeRegistry:
    if not isinstance(raw, list):
        raise ValueError("Bridge list must be a JSON array.")

    registry = BridgeRegistry()
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            registry.issues.append(RegistryIssue(index=index, missing=["record"], record=entry))
            continue
        item = normalize_keys(entry)
        missing = validate_bridge(item)
        if missing:
            registry.issues.append(RegistryIssue(index=index, missing=missing, record=entry))
            continue
        registry.bridges.append(
            Bridge(
                id=_clean(item["id"]),
                latitude=float(item["latitude"]),
                longitude=float(item["longitude"]),
                name=_clean(item["naam"]),
                region=_clean(item.get("provincie")),
                town=_clean(item.get("stad")),
                correlation_ids=normalize_correlation_ids(item.get("ndwID")),
            )
        )

    for issue in registry.issues:
        LOGGER.warning(
            "Skipping invalid bridge at index %d (missing/invalid keys: %s)",
            issue.index,
            ", ".join(issue.missing),
        )
    return registry


def load_bridges(path: Path) -> BridgeRegistry:
    """Read and validate a bridge list; abort when nothing usable remains."""
    if not path.exists():
        raise SystemExit(f"Bridge list not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        registry = parse_bridges(raw)
    except ValueError as exc:
        raise SystemExit(f"Bridge list {path} could not be parsed: {exc}") from exc

    if not registry.bridges:
        raise SystemExit(f"No valid bridges found in {path}.")

    LOGGER.info(
        "Loaded %d bridges from %s (%d invalid entries skipped)",
        len(registry.bridges),
        path,
        len(registry.issues),
    )
    return registry


def append_issue_log(path: Path, issues: Iterable[RegistryIssue]) -> int:
    lines: list[str] = []
    stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
    for issue in issues:
        lines.append(
            f"{stamp} - Invalid bridge at index {issue.index}. "
            f"Missing/invalid keys: {','.join(issue.missing)}\n"
            f"{pprint.pformat(issue.record)}\n---\n"
        )
    if not lines:
        return 0
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.writelines(lines)
    return len(lines)
