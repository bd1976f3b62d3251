import unittest
from datetime import datetime, timezone
from unittest import mock

import requests

from feedsync.errors import FeedFetchError, FeedParseError
from feedsync.ics_client import fetch_feed, normalize_feed_url, parse_ics


SAMPLE_ICS = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example//Club Calendar//EN
BEGIN:VEVENT
UID:match-1@example.com
SUMMARY:Kamp mod AGF
DESCRIPTION:Mødetid 9:15
LOCATION:Stadion Nord
DTSTART:20260301T090000Z
DTEND:20260301T103000Z
CATEGORIES:Match,U17
LAST-MODIFIED:20260215T120000Z
END:VEVENT
BEGIN:VEVENT
UID:camp-1@example.com
SUMMARY:Træningslejr
DTSTART;VALUE=DATE:20260710
DTEND;VALUE=DATE:20260712
END:VEVENT
BEGIN:VEVENT
UID:cancelled-1@example.com
SUMMARY:Aflyst træning
STATUS:CANCELLED
DTSTART;TZID=Europe/Copenhagen:20260305T170000
END:VEVENT
END:VCALENDAR
"""


class ParseIcsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.events = {event.uid: event for event in parse_ics(SAMPLE_ICS, "Europe/Copenhagen")}

    def test_utc_event_is_converted_to_local_time(self) -> None:
        event = self.events["match-1@example.com"]
        self.assertEqual(event.summary, "Kamp mod AGF")
        self.assertEqual(event.description, "Mødetid 9:15")
        self.assertEqual(event.location, "Stadion Nord")
        self.assertEqual(event.start_date_string, "2026-03-01")
        self.assertEqual(event.start_time_string, "10:00:00")
        self.assertEqual(event.end_time_string, "11:30:00")
        self.assertFalse(event.is_all_day)
        self.assertEqual(event.start_date, datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(event.categories, ["Match", "U17"])
        self.assertEqual(event.last_modified, datetime(2026, 2, 15, 12, 0, tzinfo=timezone.utc))
        self.assertFalse(event.is_cancelled)

    def test_all_day_event(self) -> None:
        event = self.events["camp-1@example.com"]
        self.assertTrue(event.is_all_day)
        self.assertEqual(event.start_date_string, "2026-07-10")
        self.assertEqual(event.start_time_string, "00:00:00")
        self.assertEqual(event.end_date_string, "2026-07-12")

    def test_status_and_default_end(self) -> None:
        event = self.events["cancelled-1@example.com"]
        self.assertTrue(event.is_cancelled)
        self.assertEqual(event.start_time_string, "17:00:00")
        self.assertEqual(event.end_time_string, "18:00:00")

    def test_calendar_method_applies_to_events(self) -> None:
        text = SAMPLE_ICS.replace("PRODID:-//Example//Club Calendar//EN", "PRODID:-//Example//EN\nMETHOD:CANCEL")
        events = parse_ics(text)
        self.assertTrue(all(event.method == "CANCEL" for event in events))
        self.assertTrue(all(event.is_cancelled for event in events))

    def test_missing_uid_and_summary_get_defaults(self) -> None:
        text = "BEGIN:VCALENDAR\nVERSION:2.0\nBEGIN:VEVENT\nDTSTART:20260301T090000Z\nEND:VEVENT\nEND:VCALENDAR\n"
        first = parse_ics(text)[0]
        second = parse_ics(text)[0]
        self.assertEqual(first.summary, "Ingen titel")
        self.assertTrue(first.uid.startswith("generated-"))
        self.assertEqual(first.uid, second.uid)

    def test_invalid_data_raises(self) -> None:
        with self.assertRaises(FeedParseError):
            parse_ics("this is not a calendar")


class FetchFeedTests(unittest.TestCase):
    def test_normalize_feed_url(self) -> None:
        self.assertEqual(normalize_feed_url("webcal://example.com/a.ics"), "https://example.com/a.ics")
        self.assertEqual(normalize_feed_url(" https://example.com/a.ics "), "https://example.com/a.ics")

    def test_fetch_parses_response(self) -> None:
        response = mock.Mock(ok=True, status_code=200, content=SAMPLE_ICS.encode("utf-8"))
        with mock.patch("feedsync.ics_client.requests.get", return_value=response) as get:
            events = fetch_feed("webcal://example.com/club.ics", timeout_seconds=5)
        self.assertEqual(len(events), 3)
        self.assertEqual(get.call_args.args[0], "https://example.com/club.ics")
        self.assertEqual(get.call_args.kwargs["timeout"], 5)

    def test_http_error_raises_fetch_error(self) -> None:
        response = mock.Mock(ok=False, status_code=503, content=b"")
        with mock.patch("feedsync.ics_client.requests.get", return_value=response):
            with self.assertRaises(FeedFetchError):
                fetch_feed("https://example.com/club.ics")

    def test_transport_error_raises_fetch_error(self) -> None:
        with mock.patch(
            "feedsync.ics_client.requests.get",
            side_effect=requests.ConnectionError("connection refused"),
        ):
            with self.assertRaises(FeedFetchError):
                fetch_feed("https://example.com/club.ics")

    def test_empty_url(self) -> None:
        with self.assertRaises(FeedFetchError):
            fetch_feed("")


if __name__ == "__main__":
    unittest.main()
