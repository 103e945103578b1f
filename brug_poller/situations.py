"""Index feed situations, resolve them per bridge and derive bridge status."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Iterable, Mapping, NamedTuple, Sequence, Union

from .bridges import Bridge
from .poll_ndw import FeedSituation

LOGGER = logging.getLogger(__name__)

RETENTION_WINDOW = timedelta(hours=2)
COORDINATE_PRECISION = Decimal("0.00001")

ACTIVE_VALIDITY = "active"
ACTIVE_PROBABILITY = "certain"
ACTIVE_OPERATOR_ACTION = "beingCarriedOut"
PLANNED_VALIDITY = "planned"
PLANNED_PROBABILITY = "probable"
PLANNED_OPERATOR_ACTION = "approved"

DEFAULT_OPERATOR_ACTION = "certain"
DEFAULT_PROBABILITY = "beingTerminated"
DEFAULT_VERSION = "0"


class MatchMode(str, Enum):
    COORDINATES = "coordinates"
    NDW_ID = "ndw-id"


class BridgeStatus(str, Enum):
    OPEN = "open"
    PLANNED = "gepland"
    CLOSED = "dicht"

    @property
    def priority(self) -> int:
        return STATUS_PRIORITY[self]


STATUS_PRIORITY: dict[BridgeStatus, int] = {
    BridgeStatus.OPEN: 3,
    BridgeStatus.PLANNED: 2,
    BridgeStatus.CLOSED: 1,
}


class CoordinateKey(NamedTuple):
    latitude: Decimal
    longitude: Decimal


MatchKey = Union[CoordinateKey, str]


@dataclass(frozen=True)
class Situation:
    key: MatchKey
    ndw_id: str
    start: datetime
    end: datetime | None
    start_raw: str
    end_raw: str
    validity_status: str
    probability: str
    operator_action: str
    version: str


@dataclass(frozen=True)
class DerivedStatus:
    status: BridgeStatus
    open: bool
    planning: bool
    status_moment: str
    distance_seconds: float


@dataclass(frozen=True)
class Resolution:
    situation: Situation
    derived: DerivedStatus


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse an ISO-8601 feed timestamp; naive values are taken as UTC."""
    if not raw:
        return None
    value = raw.strip()
    if not value:
        return None
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_utc_millis(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _round_coordinate(value: float) -> Decimal | None:
    if not math.isfinite(value):
        return None
    try:
        return Decimal(str(value)).quantize(COORDINATE_PRECISION, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


def coordinate_key(latitude: float | None, longitude: float | None) -> CoordinateKey | None:
    if latitude is None or longitude is None:
        return None
    lat = _round_coordinate(latitude)
    lon = _round_coordinate(longitude)
    if lat is None or lon is None:
        return None
    return CoordinateKey(lat, lon)


def situation_key(feed_situation: FeedSituation, mode: MatchMode) -> MatchKey | None:
    if mode is MatchMode.COORDINATES:
        return coordinate_key(feed_situation.latitude, feed_situation.longitude)
    return feed_situation.ndw_id or None


def bridge_keys(bridge: Bridge, mode: MatchMode) -> list[MatchKey]:
    if mode is MatchMode.COORDINATES:
        key = coordinate_key(bridge.latitude, bridge.longitude)
        return [key] if key is not None else []
    return list(bridge.correlation_ids)


def build_situation_index(
    feed_situations: Iterable[FeedSituation],
    now: datetime,
    mode: MatchMode,
) -> dict[MatchKey, list[Situation]]:
    """Index situations that are still relevant by their matching key.

    A situation is kept only when its start parses and start + 2h lies
    strictly after ``now``. Lists keep feed order.
    """
    index: dict[MatchKey, list[Situation]] = {}
    skipped = 0
    for feed_situation in feed_situations:
        key = situation_key(feed_situation, mode)
        if key is None:
            skipped += 1
            continue
        start = parse_timestamp(feed_situation.start_raw)
        if start is None:
            skipped += 1
            continue
        if start + RETENTION_WINDOW <= now:
            continue
        index.setdefault(key, []).append(
            Situation(
                key=key,
                ndw_id=feed_situation.ndw_id,
                start=start,
                end=parse_timestamp(feed_situation.end_raw),
                start_raw=feed_situation.start_raw,
                end_raw=feed_situation.end_raw,
                validity_status=feed_situation.validity_status,
                probability=feed_situation.probability,
                operator_action=feed_situation.operator_action,
                version=feed_situation.version,
            )
        )
    if skipped:
        LOGGER.debug("Skipped %d situations without a usable key or start time", skipped)
    return index


def _is_active_signal(situation: Situation) -> bool:
    return (
        situation.validity_status == ACTIVE_VALIDITY
        or situation.probability == ACTIVE_PROBABILITY
        or situation.operator_action == ACTIVE_OPERATOR_ACTION
    )


def _is_planned_signal(situation: Situation) -> bool:
    return (
        situation.validity_status == PLANNED_VALIDITY
        or situation.probability == PLANNED_PROBABILITY
        or situation.operator_action == PLANNED_OPERATOR_ACTION
    )


def derive_status(situation: Situation, now: datetime) -> DerivedStatus:
    in_window = situation.start <= now and (situation.end is None or now <= situation.end)
    if in_window and _is_active_signal(situation):
        return DerivedStatus(
            status=BridgeStatus.OPEN,
            open=True,
            planning=False,
            status_moment=situation.start_raw,
            distance_seconds=0.0,
        )

    distance = abs((now - situation.start).total_seconds())
    if situation.start > now or _is_planned_signal(situation):
        return DerivedStatus(
            status=BridgeStatus.PLANNED,
            open=False,
            planning=True,
            status_moment=situation.start_raw,
            distance_seconds=distance,
        )

    return DerivedStatus(
        status=BridgeStatus.CLOSED,
        open=False,
        planning=False,
        status_moment=situation.end_raw or situation.start_raw,
        distance_seconds=distance,
    )


def default_status(now: datetime) -> DerivedStatus:
    """Status for a bridge without any matching situation: closed."""
    return DerivedStatus(
        status=BridgeStatus.CLOSED,
        open=False,
        planning=False,
        status_moment=format_utc_millis(now),
        distance_seconds=0.0,
    )


def _outranks(candidate: DerivedStatus, best: DerivedStatus) -> bool:
    if candidate.status.priority != best.status.priority:
        return candidate.status.priority > best.status.priority
    return candidate.distance_seconds < best.distance_seconds


def select_best(candidates: Sequence[Situation], now: datetime) -> Resolution | None:
    best: Resolution | None = None
    for situation in candidates:
        derived = derive_status(situation, now)
        if best is None or _outranks(derived, best.derived):
            best = Resolution(situation=situation, derived=derived)
    return best


def resolve_situation(
    keys: Sequence[MatchKey],
    index: Mapping[MatchKey, Sequence[Situation]],
    now: datetime,
) -> Resolution | None:
    candidates: list[Situation] = []
    for key in keys:
        candidates.extend(index.get(key, ()))
    return select_best(candidates, now)


@dataclass(frozen=True)
class BridgeState:
    bridge: Bridge
    derived: DerivedStatus
    situation: Situation | None

    @property
    def status(self) -> BridgeStatus:
        return self.derived.status

    def as_record(self) -> dict[str, object]:
        situation = self.situation
        if situation is None:
            operator_action = DEFAULT_OPERATOR_ACTION
            probability = DEFAULT_PROBABILITY
            version = DEFAULT_VERSION
            start_raw = self.derived.status_moment
            end_raw = ""
            validity_status = ""
        else:
            operator_action = situation.operator_action
            probability = situation.probability
            version = situation.version
            start_raw = situation.start_raw
            end_raw = situation.end_raw
            validity_status = situation.validity_status

        return {
            "id": self.bridge.id,
            "latitude": self.bridge.latitude,
            "longitude": self.bridge.longitude,
            "situationCurrent": operator_action,
            "situationPredicted": probability,
            "version": version,
            "startRaw": start_raw,
            "endRaw": end_raw,
            "validityStatus": validity_status,
            "operatorActionStatus": operator_action,
            "planning": self.derived.planning,
            "name": self.bridge.name,
            "region": self.bridge.region,
            "town": self.bridge.town,
            "correlationIds": list(self.bridge.correlation_ids),
            "status": self.derived.status.value,
            "open": self.derived.open,
        }


def evaluate_bridge(
    bridge: Bridge,
    index: Mapping[MatchKey, Sequence[Situation]],
    mode: MatchMode,
    now: datetime,
) -> BridgeState:
    resolution = resolve_situation(bridge_keys(bridge, mode), index, now)
    if resolution is None:
        return BridgeState(bridge=bridge, derived=default_status(now), situation=None)
    return BridgeState(bridge=bridge, derived=resolution.derived, situation=resolution.situation)
