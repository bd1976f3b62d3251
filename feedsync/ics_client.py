from __future__ import annotations

import hashlib
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import requests
from icalendar import Calendar as ICalendar

from feedsync.errors import FeedFetchError, FeedParseError
from feedsync.models import DEFAULT_LOCAL_TIMEZONE, FetchedEvent


logger = logging.getLogger(__name__)

WEBCAL_PATTERN = re.compile(r"^webcals?://", re.IGNORECASE)
DEFAULT_SUMMARY = "Ingen titel"
USER_AGENT = "feedsync/0.1"


def normalize_feed_url(url: str) -> str:
    return WEBCAL_PATTERN.sub("https://", str(url or "").strip())


def _generated_uid(summary: str, start: str) -> str:
    digest = hashlib.sha1(f"{summary}|{start}".encode("utf-8")).hexdigest()[:16]  # nosec B324
    return f"generated-{digest}"


def _to_local(value: datetime, zone: ZoneInfo) -> datetime:
    # Floating times are emitted in UTC by the providers we consume.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(zone)


def _split_local(value: date | datetime, zone: ZoneInfo) -> tuple[str, str, bool]:
    if isinstance(value, datetime):
        local = _to_local(value, zone)
        return local.strftime("%Y-%m-%d"), local.strftime("%H:%M:%S"), False
    return value.isoformat(), "00:00:00", True


def _resolved_instant(value: date | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def _decoded(component: Any, name: str) -> Any:
    if component.get(name) is None:
        return None
    try:
        return component.decoded(name)
    except (KeyError, ValueError, TypeError):
        logger.debug("ignoring undecodable %s property", name)
        return None


def _text_property(component: Any, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _categories(component: Any) -> list[str]:
    raw = component.get("CATEGORIES")
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else [raw]
    output: list[str] = []
    for item in items:
        values = getattr(item, "cats", None)
        if values is None:
            values = str(item).split(",")
        for value in values:
            text = str(value).strip()
            if text and text not in output:
                output.append(text)
    return output


def _parse_vevent(vevent: Any, zone: ZoneInfo, calendar_method: str | None) -> FetchedEvent | None:
    dtstart = _decoded(vevent, "DTSTART")
    if dtstart is None:
        logger.debug("skipping VEVENT without DTSTART uid=%s", _text_property(vevent, "UID"))
        return None
    dtend = _decoded(vevent, "DTEND")
    if dtend is None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            dtend = dtstart + duration
        elif isinstance(dtstart, datetime):
            dtend = dtstart + timedelta(hours=1)
        else:
            dtend = dtstart

    start_date, start_time, is_all_day = _split_local(dtstart, zone)
    end_date, end_time, _ = _split_local(dtend, zone)

    summary = _text_property(vevent, "SUMMARY") or DEFAULT_SUMMARY
    uid = _text_property(vevent, "UID") or _generated_uid(summary, f"{start_date}T{start_time}")

    tzid = None
    if isinstance(dtstart, datetime) and dtstart.tzinfo is not None:
        tzid = str(getattr(dtstart.tzinfo, "key", None) or dtstart.tzinfo.tzname(dtstart) or "") or None

    last_modified = _decoded(vevent, "LAST-MODIFIED")
    if not isinstance(last_modified, datetime):
        last_modified = None

    return FetchedEvent(
        uid=uid,
        summary=summary,
        description=_text_property(vevent, "DESCRIPTION"),
        location=_text_property(vevent, "LOCATION"),
        start_date=_resolved_instant(dtstart),
        end_date=_resolved_instant(dtend),
        start_date_string=start_date,
        start_time_string=start_time,
        end_date_string=end_date,
        end_time_string=end_time,
        timezone=tzid,
        is_all_day=is_all_day,
        categories=_categories(vevent),
        last_modified=_resolved_instant(last_modified),
        status=_text_property(vevent, "STATUS") or None,
        method=_text_property(vevent, "METHOD") or calendar_method,
    )


def parse_ics(raw_ical: str | bytes, local_timezone: str = DEFAULT_LOCAL_TIMEZONE) -> list[FetchedEvent]:
    """Parse iCalendar text into events expressed in ``local_timezone``."""
    try:
        calendar_obj = ICalendar.from_ical(raw_ical)
    except (ValueError, IndexError) as exc:
        raise FeedParseError(f"Invalid iCalendar data: {exc}") from exc
    zone = ZoneInfo(local_timezone)
    calendar_method = _text_property(calendar_obj, "METHOD") or None
    events: list[FetchedEvent] = []
    for component in calendar_obj.walk("VEVENT"):
        event = _parse_vevent(component, zone, calendar_method)
        if event is not None:
            events.append(event)
    logger.debug("parsed %d events from feed", len(events))
    return events


def fetch_feed(
    url: str,
    *,
    timeout_seconds: int = 30,
    local_timezone: str = DEFAULT_LOCAL_TIMEZONE,
) -> list[FetchedEvent]:
    http_url = normalize_feed_url(url)
    if not http_url:
        raise FeedFetchError("Feed URL is empty.")
    try:
        response = requests.get(
            http_url,
            headers={"User-Agent": USER_AGENT, "Accept": "text/calendar, */*"},
            timeout=timeout_seconds,
        )
    except requests.RequestException as exc:
        raise FeedFetchError(f"{type(exc).__name__}: {exc}") from exc
    if not response.ok:
        raise FeedFetchError(f"HTTP {response.status_code} while fetching feed")
    logger.info("fetched feed (%d bytes)", len(response.content))
    return parse_ics(response.content, local_timezone)
