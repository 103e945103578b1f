#!/usr/bin/env python3
"""Fetch the NDW bridge-opening feed and parse its DATEX II situations."""
from __future__ import annotations

import argparse
import gzip
import logging
import os
import zlib
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from xml.etree import ElementTree

import requests
from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)

DEFAULT_FEED_URL = "http://opendata.ndw.nu/brugopeningen.xml.gz"
GZIP_MAGIC = b"\x1f\x8b"


class FeedError(RuntimeError):
    """Raised when the feed cannot be downloaded, decompressed or parsed."""


@dataclass(frozen=True)
class FeedSituation:
    situation_id: str
    ndw_id: str
    latitude: float | None
    longitude: float | None
    start_raw: str
    end_raw: str
    validity_status: str
    probability: str
    operator_action: str
    attributes: tuple[str, ...] = ()

    @property
    def version(self) -> str:
        if len(self.attributes) > 1:
            return self.attributes[1]
        return "0"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(element: ElementTree.Element | None, name: str) -> ElementTree.Element | None:
    if element is None:
        return None
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


def _path(element: ElementTree.Element | None, *names: str) -> ElementTree.Element | None:
    for name in names:
        element = _child(element, name)
        if element is None:
            return None
    return element


def _text(element: ElementTree.Element | None) -> str:
    if element is None or element.text is None:
        return ""
    return element.text.strip()


def _find_first(element: ElementTree.Element | None, name: str) -> ElementTree.Element | None:
    if element is None:
        return None
    for node in element.iter():
        if _local(node.tag) == name:
            return node
    return None


def _to_float(value: str) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def extract_ndw_identifier(situation_id: str) -> str:
    """Return the bridge identifier embedded in a situation id."""
    if not situation_id:
        return ""
    parts = situation_id.split("_")
    if len(parts) > 1:
        return parts[1]
    return situation_id


def _plain_attributes(element: ElementTree.Element | None) -> tuple[str, ...]:
    if element is None:
        return ()
    return tuple(value for key, value in element.attrib.items() if not key.startswith("{"))


def _coordinates(record: ElementTree.Element | None) -> tuple[float | None, float | None]:
    for container in ("locationForDisplay", "pointCoordinates"):
        node = _find_first(record, container)
        if node is None:
            continue
        latitude = _to_float(_text(_child(node, "latitude")))
        longitude = _to_float(_text(_child(node, "longitude")))
        if latitude is not None and longitude is not None:
            return latitude, longitude
    return None, None


def parse_situation(element: ElementTree.Element) -> FeedSituation:
    situation_id = element.attrib.get("id", "").strip()
    record = _child(element, "situationRecord")
    validity = _child(record, "validity")
    time_spec = _child(validity, "validityTimeSpecification")
    latitude, longitude = _coordinates(record)

    return FeedSituation(
        situation_id=situation_id,
        ndw_id=extract_ndw_identifier(situation_id),
        latitude=latitude,
        longitude=longitude,
        start_raw=_text(_child(time_spec, "overallStartTime")),
        end_raw=_text(_child(time_spec, "overallEndTime")),
        validity_status=_text(_child(validity, "validityStatus")),
        probability=_text(_child(record, "probabilityOfOccurrence")),
        operator_action=_text(_child(record, "operatorActionStatus")),
        attributes=_plain_attributes(record),
    )


def decompress(payload: bytes) -> bytes:
    if not payload.startswith(GZIP_MAGIC):
        return payload
    try:
        return gzip.decompress(payload)
    except (OSError, EOFError, zlib.error) as exc:
        raise FeedError(f"Failed to decompress feed payload: {exc}") from exc


def parse_situations(xml_bytes: bytes) -> list[FeedSituation]:
    try:
        root = ElementTree.fromstring(xml_bytes)
    except ElementTree.ParseError as exc:
        raise FeedError(f"Failed to parse feed XML: {exc}") from exc

    publication = _find_first(root, "payloadPublication")
    if publication is None:
        LOGGER.warning("Feed contains no payloadPublication; continuing with no situations.")
        return []

    situations = [parse_situation(node) for node in publication if _local(node.tag) == "situation"]
    if not situations:
        LOGGER.warning("Feed contains no situation nodes; continuing with no situations.")
    return situations


def fetch_feed(url: str, timeout: float) -> bytes:
    LOGGER.debug("Requesting %s", url)
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FeedError(f"Failed to fetch {url}: {exc}") from exc
    return decompress(response.content)


def fetch_situations(url: str, timeout: float) -> list[FeedSituation]:
    situations = parse_situations(fetch_feed(url, timeout))
    LOGGER.info("Fetched %s (situations=%d)", url, len(situations))
    return situations


def resolve_feed_url(cli_value: str | None) -> str:
    return cli_value or os.getenv("NDW_FEED_URL") or DEFAULT_FEED_URL


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Download the NDW bridge-opening feed and report what it contains."
    )
    parser.add_argument(
        "--feed-url",
        help=f"Feed URL (default: NDW_FEED_URL env var or {DEFAULT_FEED_URL}).",
    )
    parser.add_argument(
        "--http-timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for the feed response (default: 30).",
    )
    parser.add_argument(
        "--save-xml",
        help="Optional path where the decompressed XML is written.",
    )
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(dotenv_path=project_root / ".env")

    args = parse_args()
    url = resolve_feed_url(args.feed_url)

    try:
        xml_bytes = fetch_feed(url, args.http_timeout)
        situations = parse_situations(xml_bytes)
    except FeedError as exc:
        LOGGER.error("%s", exc)
        raise SystemExit(1) from exc

    if args.save_xml:
        target = Path(args.save_xml)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(xml_bytes)
        LOGGER.info("Wrote decompressed feed to %s", target)

    with_coordinates = sum(1 for s in situations if s.latitude is not None)
    with_start = sum(1 for s in situations if s.start_raw)
    probabilities = Counter(s.probability or "-" for s in situations)
    LOGGER.info(
        "Feed %s contains %d situations (with coordinates=%d, with start=%d, probabilities=%s)",
        url,
        len(situations),
        with_coordinates,
        with_start,
        dict(probabilities),
    )


if __name__ == "__main__":
    main()
