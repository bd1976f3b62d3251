from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


DEFAULT_LOCAL_TIMEZONE = "Europe/Copenhagen"
USER_DELETE_REASON = "user-delete"
MISSING_FROM_FEED_REASON = "missing-from-feed"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def normalize_timezone(value: Any) -> str:
    """Return ``value`` when it names a known IANA zone, else the default zone."""
    name = str(value or "").strip()
    if not name:
        return DEFAULT_LOCAL_TIMEZONE
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return DEFAULT_LOCAL_TIMEZONE
    return name


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def create_datetime_string(date: str, time: str) -> str:
    """Compose local calendar components into ``YYYY-MM-DDTHH:MM:SS``."""
    return f"{date}T{time}"


def parse_local_datetime(date: str | None, time: str | None) -> datetime | None:
    """Parse local date/time strings into a naive wall-clock datetime.

    Returns ``None`` when the date is missing or malformed; a missing time
    means midnight.
    """
    date_text = str(date or "").strip()
    if not date_text:
        return None
    time_text = str(time or "").strip() or "00:00:00"
    try:
        return datetime.fromisoformat(create_datetime_string(date_text, time_text))
    except ValueError:
        return None


def _text(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass
class FetchedEvent:
    uid: str
    summary: str = ""
    description: str = ""
    location: str = ""
    start_date: datetime | None = None
    end_date: datetime | None = None
    start_date_string: str = ""
    start_time_string: str = "00:00:00"
    end_date_string: str = ""
    end_time_string: str = "00:00:00"
    timezone: str | None = None
    is_all_day: bool = False
    categories: list[str] = field(default_factory=list)
    last_modified: datetime | None = None
    status: str | None = None
    method: str | None = None

    @property
    def is_cancelled(self) -> bool:
        status = _text(self.status).strip().upper()
        method = _text(self.method).strip().upper()
        return status == "CANCELLED" or method == "CANCEL"

    @property
    def local_start(self) -> datetime | None:
        return parse_local_datetime(self.start_date_string, self.start_time_string)

    def raw_payload(self) -> dict[str, Any]:
        return {
            "categories": list(self.categories),
            "timezone": self.timezone,
            "status": self.status,
            "method": self.method,
        }


@dataclass
class ExternalEventRow:
    id: str
    provider_event_uid: str = ""
    title: str = ""
    description: str | None = None
    location: str | None = None
    start_date: str = ""
    start_time: str = "00:00:00"
    end_date: str = ""
    end_time: str = "00:00:00"
    is_all_day: bool = False
    external_last_modified: datetime | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)
    miss_count: int | None = 0
    deleted: bool = False
    deleted_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_seen_at: datetime | None = None

    @property
    def local_start(self) -> datetime | None:
        return parse_local_datetime(self.start_date, self.start_time)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExternalEventRow":
        raw_payload = data.get("raw_payload") or {}
        return cls(
            id=str(data["id"]),
            provider_event_uid=_text(data.get("provider_event_uid")),
            title=_text(data.get("title")),
            description=data.get("description"),
            location=data.get("location"),
            start_date=_text(data.get("start_date")),
            start_time=_text(data.get("start_time")) or "00:00:00",
            end_date=_text(data.get("end_date")),
            end_time=_text(data.get("end_time")) or "00:00:00",
            is_all_day=bool(data.get("is_all_day", False)),
            external_last_modified=parse_iso_datetime(data.get("external_last_modified")),
            raw_payload=raw_payload if isinstance(raw_payload, dict) else {},
            miss_count=data.get("miss_count"),
            deleted=bool(data.get("deleted", False)),
            deleted_reason=data.get("deleted_reason"),
            created_at=parse_iso_datetime(data.get("created_at")),
            updated_at=parse_iso_datetime(data.get("updated_at")),
            last_seen_at=parse_iso_datetime(data.get("last_seen_at")),
        )


@dataclass
class SyncOptions:
    grace_hours: float = 6
    fuzzy_threshold: float = 0.65
    dt_tolerance_seconds: float = 300
    max_miss_count: int = 3
    protect_past_events: bool = False
    local_timezone: str = DEFAULT_LOCAL_TIMEZONE
    now: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncOptions":
        data = data or {}
        return cls(
            grace_hours=max(0.0, float(data.get("grace_hours", 6))),
            fuzzy_threshold=min(1.0, max(0.0, float(data.get("fuzzy_threshold", 0.65)))),
            dt_tolerance_seconds=max(0.0, float(data.get("dt_tolerance_seconds", 300))),
            max_miss_count=max(1, int(data.get("max_miss_count", 3))),
            protect_past_events=bool(data.get("protect_past_events", False)),
            local_timezone=normalize_timezone(data.get("local_timezone")),
        )

    def current_time(self) -> datetime:
        return _ensure_tz(self.now) if self.now is not None else utc_now()


@dataclass
class CreateOp:
    event: FetchedEvent
    reason: str


@dataclass
class UpdateOp:
    db_row_id: str
    event: FetchedEvent
    reason: str


@dataclass
class RestoreOp:
    db_row_id: str
    event: FetchedEvent
    reason: str


@dataclass
class DeleteOp:
    db_row_id: str
    reason: str


@dataclass
class MissOp:
    db_row_id: str
    miss_count: int
    reason: str


@dataclass
class SyncOperations:
    """Mutations needed to converge the store with one fetched feed.

    The five operation lists are disjoint per row id. ``misses`` lists rows
    that were unmatched but are still inside the grace window: the caller must
    increment their ``miss_count`` when applying the batch, otherwise the
    miss-count threshold never trips.
    """

    creates: list[CreateOp] = field(default_factory=list)
    updates: list[UpdateOp] = field(default_factory=list)
    soft_deletes: list[DeleteOp] = field(default_factory=list)
    restores: list[RestoreOp] = field(default_factory=list)
    immediate_deletes: list[DeleteOp] = field(default_factory=list)
    misses: list[MissOp] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.creates or self.updates or self.soft_deletes or self.restores or self.immediate_deletes
        )

    def counts(self) -> dict[str, int]:
        return {
            "creates": len(self.creates),
            "updates": len(self.updates),
            "soft_deletes": len(self.soft_deletes),
            "restores": len(self.restores),
            "immediate_deletes": len(self.immediate_deletes),
            "misses": len(self.misses),
        }

    def touched_row_ids(self) -> list[str]:
        ids: list[str] = []
        for op in self.updates:
            ids.append(op.db_row_id)
        for op in self.restores:
            ids.append(op.db_row_id)
        for op in self.soft_deletes:
            ids.append(op.db_row_id)
        for op in self.immediate_deletes:
            ids.append(op.db_row_id)
        return ids


@dataclass
class FeedConfig:
    calendar_id: str
    url: str
    name: str = ""
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedConfig":
        data = data or {}
        calendar_id = str(data.get("calendar_id", "")).strip()
        return cls(
            calendar_id=calendar_id,
            url=str(data.get("url", "")).strip(),
            name=str(data.get("name", "")).strip() or calendar_id,
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class SyncConfig:
    method_cancel: bool = True
    timeout_seconds: int = 30
    grace_hours: float = 6
    fuzzy_threshold: float = 0.65
    dt_tolerance_seconds: float = 300
    max_miss_count: int = 3
    protect_past_events: bool = False
    local_timezone: str = DEFAULT_LOCAL_TIMEZONE

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        options = SyncOptions.from_dict(data)
        return cls(
            method_cancel=bool(data.get("method_cancel", True)),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            grace_hours=options.grace_hours,
            fuzzy_threshold=options.fuzzy_threshold,
            dt_tolerance_seconds=options.dt_tolerance_seconds,
            max_miss_count=options.max_miss_count,
            protect_past_events=options.protect_past_events,
            local_timezone=options.local_timezone,
        )

    def to_options(self, now: datetime | None = None) -> SyncOptions:
        return SyncOptions(
            grace_hours=self.grace_hours,
            fuzzy_threshold=self.fuzzy_threshold,
            dt_tolerance_seconds=self.dt_tolerance_seconds,
            max_miss_count=self.max_miss_count,
            protect_past_events=self.protect_past_events,
            local_timezone=self.local_timezone,
            now=now,
        )


@dataclass
class StorageConfig:
    db_path: str = "data/feedsync.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/feedsync.db")).strip() or "data/feedsync.db")


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class CategoryConfig:
    id: str
    name: str
    is_system: bool = False


@dataclass
class AppConfig:
    feeds: list[FeedConfig] = field(default_factory=list)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    categories: list[CategoryConfig] = field(default_factory=list)
    category_mappings: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        feeds: list[FeedConfig] = []
        seen_ids: set[str] = set()
        for raw_feed in data.get("feeds") or []:
            if not isinstance(raw_feed, dict):
                continue
            feed = FeedConfig.from_dict(raw_feed)
            if not feed.calendar_id or not feed.url or feed.calendar_id in seen_ids:
                continue
            seen_ids.add(feed.calendar_id)
            feeds.append(feed)

        categories: list[CategoryConfig] = []
        for raw_category in data.get("categories") or []:
            if not isinstance(raw_category, dict):
                continue
            category_id = str(raw_category.get("id", "")).strip()
            name = str(raw_category.get("name", "")).strip()
            if not category_id or not name:
                continue
            categories.append(
                CategoryConfig(id=category_id, name=name, is_system=bool(raw_category.get("is_system", False)))
            )

        raw_mappings = data.get("category_mappings", {})
        mappings: dict[str, str] = {}
        if isinstance(raw_mappings, dict):
            for key, value in raw_mappings.items():
                external = str(key).strip()
                internal = str(value or "").strip()
                if external and internal:
                    mappings[external] = internal

        return cls(
            feeds=feeds,
            sync=SyncConfig.from_dict(data.get("sync")),
            storage=StorageConfig.from_dict(data.get("storage")),
            logging=LoggingConfig.from_dict(data.get("logging")),
            categories=categories,
            category_mappings=mappings,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    calendar_id: str
    status: str
    message: str
    duration_ms: int
    trigger: str
    counts: dict[str, int] = field(default_factory=dict)


def default_app_config() -> AppConfig:
    return AppConfig()
