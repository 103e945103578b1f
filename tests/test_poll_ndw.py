import gzip
import unittest
from unittest.mock import MagicMock, patch

import requests

from brug_poller.poll_ndw import (
    FeedError,
    decompress,
    extract_ndw_identifier,
    fetch_feed,
    fetch_situations,
    parse_situations,
    resolve_feed_url,
)

SAMPLE_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<SOAP:Envelope xmlns:SOAP="http://schemas.xmlsoap.org/soap/envelope/">
  <SOAP:Body>
    <d2LogicalModel xmlns="http://datex2.eu/schema/2/2_0"
                    xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
                    modelBaseVersion="2">
      <exchange><supplierIdentification><country>nl</country></supplierIdentification></exchange>
      <payloadPublication xsi:type="SituationPublication" lang="nl">
        <publicationTime>2025-06-01T11:59:00Z</publicationTime>
        <situation id="NDW04_NLAMS000123" version="5">
          <situationRecord xsi:type="GeneralNetworkManagement" id="NDW04_NLAMS000123_1" version="7">
            <probabilityOfOccurrence>certain</probabilityOfOccurrence>
            <validity>
              <validityStatus>active</validityStatus>
              <validityTimeSpecification>
                <overallStartTime>2025-06-01T11:55:00.000Z</overallStartTime>
                <overallEndTime>2025-06-01T12:10:00.000Z</overallEndTime>
              </validityTimeSpecification>
            </validity>
            <groupOfLocations xsi:type="Point">
              <locationForDisplay>
                <latitude>52.000001</latitude>
                <longitude>4.5</longitude>
              </locationForDisplay>
            </groupOfLocations>
            <operatorActionStatus>beingCarriedOut</operatorActionStatus>
          </situationRecord>
        </situation>
        <situation id="LOOSE">
          <situationRecord>
            <probabilityOfOccurrence>probable</probabilityOfOccurrence>
            <validity>
              <validityTimeSpecification>
                <overallStartTime>2025-06-01T13:00:00Z</overallStartTime>
              </validityTimeSpecification>
            </validity>
            <groupOfLocations>
              <locationForDisplay>
                <latitude>unknown</latitude>
                <longitude>4.5</longitude>
              </locationForDisplay>
            </groupOfLocations>
          </situationRecord>
        </situation>
      </payloadPublication>
    </d2LogicalModel>
  </SOAP:Body>
</SOAP:Envelope>
"""


class ParseSituationsTest(unittest.TestCase):
    def test_parses_datex_situations(self) -> None:
        first, second = parse_situations(SAMPLE_XML)

        self.assertEqual(first.situation_id, "NDW04_NLAMS000123")
        self.assertEqual(first.ndw_id, "NLAMS000123")
        self.assertEqual(first.latitude, 52.000001)
        self.assertEqual(first.longitude, 4.5)
        self.assertEqual(first.start_raw, "2025-06-01T11:55:00.000Z")
        self.assertEqual(first.end_raw, "2025-06-01T12:10:00.000Z")
        self.assertEqual(first.validity_status, "active")
        self.assertEqual(first.probability, "certain")
        self.assertEqual(first.operator_action, "beingCarriedOut")
        self.assertEqual(first.version, "7")

        self.assertEqual(second.ndw_id, "LOOSE")
        self.assertIsNone(second.latitude)
        self.assertIsNone(second.longitude)
        self.assertEqual(second.end_raw, "")
        self.assertEqual(second.validity_status, "")
        self.assertEqual(second.operator_action, "")
        self.assertEqual(second.version, "0")

    def test_feed_without_situations_is_empty(self) -> None:
        self.assertEqual(parse_situations(b"<root><payloadPublication/></root>"), [])
        self.assertEqual(parse_situations(b"<root/>"), [])

    def test_invalid_xml_raises_feed_error(self) -> None:
        with self.assertRaises(FeedError):
            parse_situations(b"<root><unclosed></root>")

    def test_extract_ndw_identifier(self) -> None:
        self.assertEqual(extract_ndw_identifier("NDW04_NLAMS000123"), "NLAMS000123")
        self.assertEqual(extract_ndw_identifier("A_B_C"), "B")
        self.assertEqual(extract_ndw_identifier("plain"), "plain")
        self.assertEqual(extract_ndw_identifier(""), "")


class DecompressTest(unittest.TestCase):
    def test_gzip_payload_is_decompressed(self) -> None:
        self.assertEqual(decompress(gzip.compress(b"<root/>")), b"<root/>")

    def test_plain_payload_passes_through(self) -> None:
        self.assertEqual(decompress(b"<root/>"), b"<root/>")

    def test_corrupt_gzip_raises_feed_error(self) -> None:
        with self.assertRaises(FeedError):
            decompress(b"\x1f\x8b" + b"garbage")


class FetchFeedTest(unittest.TestCase):
    @patch("brug_poller.poll_ndw.requests.get")
    def test_fetch_situations_downloads_and_decompresses(self, mock_get) -> None:
        response = MagicMock()
        response.content = gzip.compress(SAMPLE_XML)
        mock_get.return_value = response

        situations = fetch_situations("https://example.com/brugopeningen.xml.gz", 5.0)

        mock_get.assert_called_once_with("https://example.com/brugopeningen.xml.gz", timeout=5.0)
        response.raise_for_status.assert_called_once_with()
        self.assertEqual(len(situations), 2)

    @patch("brug_poller.poll_ndw.requests.get")
    def test_transport_failure_raises_feed_error(self, mock_get) -> None:
        mock_get.side_effect = requests.ConnectionError("unreachable")
        with self.assertRaises(FeedError):
            fetch_feed("https://example.com/feed.xml.gz", 5.0)

    @patch("brug_poller.poll_ndw.requests.get")
    def test_http_error_raises_feed_error(self, mock_get) -> None:
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("503")
        mock_get.return_value = response
        with self.assertRaises(FeedError):
            fetch_feed("https://example.com/feed.xml.gz", 5.0)

    @patch.dict("os.environ", {"NDW_FEED_URL": "https://env.example/feed.xml.gz"})
    def test_resolve_feed_url_precedence(self) -> None:
        self.assertEqual(resolve_feed_url("https://cli.example"), "https://cli.example")
        self.assertEqual(resolve_feed_url(None), "https://env.example/feed.xml.gz")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
