from __future__ import annotations

import logging
from datetime import datetime, time
from zoneinfo import ZoneInfo

from feedsync.matcher import match_by_uid, match_event
from feedsync.models import (
    USER_DELETE_REASON,
    CreateOp,
    DeleteOp,
    ExternalEventRow,
    FetchedEvent,
    MissOp,
    RestoreOp,
    SyncOperations,
    SyncOptions,
    UpdateOp,
    parse_iso_datetime,
    parse_local_datetime,
)


logger = logging.getLogger(__name__)


def _local_now(options: SyncOptions) -> datetime:
    return options.current_time().astimezone(ZoneInfo(options.local_timezone)).replace(tzinfo=None)


def _effective_end(date: str, time_text: str, is_all_day: bool) -> datetime | None:
    end = parse_local_datetime(date, time_text)
    if end is None:
        return None
    if is_all_day and end.time() == time.min:
        return datetime.combine(end.date(), time(23, 59, 59))
    return end


def _event_has_ended(event: FetchedEvent, local_now: datetime) -> bool:
    date = event.end_date_string or event.start_date_string
    time_text = event.end_time_string if event.end_date_string else event.start_time_string
    end = _effective_end(date, time_text, event.is_all_day)
    return end is not None and end < local_now


def _row_has_ended(row: ExternalEventRow, local_now: datetime) -> bool:
    date = row.end_date or row.start_date
    time_text = row.end_time if row.end_date else row.start_time
    end = _effective_end(date, time_text, row.is_all_day)
    return end is not None and end < local_now


def _hours_since_seen(row: ExternalEventRow, now: datetime) -> float | None:
    reference = parse_iso_datetime(row.last_seen_at or row.updated_at)
    if reference is None:
        return None
    return (now - reference).total_seconds() / 3600


def _cancel_reason(event: FetchedEvent) -> str:
    return f"Event cancelled (STATUS:{event.status or 'N/A'}, METHOD:{event.method or 'N/A'})"


def compute_sync_ops(
    fetched: list[FetchedEvent],
    db_rows: list[ExternalEventRow],
    method_cancel: bool = True,
    options: SyncOptions | None = None,
) -> SyncOperations:
    """Plan the mutations that converge ``db_rows`` with a fresh fetch.

    Pure: neither argument is mutated and nothing is read or written outside
    them. Each row is claimed by at most one fetched event, so a row id shows
    up in at most one operation list. Exact uid owners claim their rows
    before any event falls back to content or fuzzy matching.

    Rows reported in ``SyncOperations.misses`` were unmatched but are still
    within policy; applying the batch must increment their ``miss_count``.
    """
    options = options or SyncOptions()
    now = options.current_time()
    local_now = _local_now(options) if options.protect_past_events else None
    ops = SyncOperations()
    matched_row_ids: set[str] = set()

    uid_claims: dict[int, ExternalEventRow] = {}
    for index, event in enumerate(fetched):
        owned = match_by_uid(event, [row for row in db_rows if row.id not in matched_row_ids])
        if owned is not None:
            uid_claims[index] = owned
            matched_row_ids.add(owned.id)

    for index, event in enumerate(fetched):
        row = uid_claims.get(index)
        if row is None:
            available = [candidate for candidate in db_rows if candidate.id not in matched_row_ids]
            row = match_event(event, available, options)
        cancelled = method_cancel and event.is_cancelled

        if row is None:
            if cancelled:
                logger.debug("dropping cancelled event uid=%s without a stored row", event.uid)
                continue
            ops.creates.append(CreateOp(event=event, reason="New event not found in database"))
            continue

        matched_row_ids.add(row.id)

        if cancelled:
            if local_now is not None and _event_has_ended(event, local_now):
                logger.debug("keeping past cancelled event row=%s", row.id)
                continue
            ops.immediate_deletes.append(DeleteOp(db_row_id=row.id, reason=_cancel_reason(event)))
            continue

        if row.deleted:
            if row.deleted_reason == USER_DELETE_REASON:
                logger.debug("not restoring user-deleted row=%s", row.id)
                continue
            ops.restores.append(
                RestoreOp(db_row_id=row.id, event=event, reason="Event reappeared in feed after soft delete")
            )
            continue

        ops.updates.append(UpdateOp(db_row_id=row.id, event=event, reason="Event exists and needs update"))

    for row in db_rows:
        if row.id in matched_row_ids or row.deleted:
            continue
        if local_now is not None and _row_has_ended(row, local_now):
            logger.debug("leaving past row=%s missing from feed untouched", row.id)
            continue

        hours = _hours_since_seen(row, now)
        miss_count = row.miss_count or 0
        hours_text = f"{hours:.1f}h" if hours is not None else "unknown time"
        if (hours is not None and hours >= options.grace_hours) or miss_count >= options.max_miss_count:
            ops.soft_deletes.append(
                DeleteOp(
                    db_row_id=row.id,
                    reason=f"Event missing from feed ({hours_text} since update, miss_count: {miss_count})",
                )
            )
            continue

        ops.misses.append(
            MissOp(
                db_row_id=row.id,
                miss_count=miss_count + 1,
                reason=f"Event missing but within grace period ({hours_text}, miss_count: {miss_count})",
            )
        )

    logger.debug("planned sync operations: %s", ops.counts())
    return ops


def _blank(value: str | None) -> str:
    return value or ""


def needs_update(event: FetchedEvent, row: ExternalEventRow) -> bool:
    """Return True when writing ``event`` over ``row`` would change anything."""
    if event.summary != row.title:
        return True
    if _blank(event.description) != _blank(row.description):
        return True
    if _blank(event.location) != _blank(row.location):
        return True
    if event.start_date_string != row.start_date or event.start_time_string != row.start_time:
        return True
    if event.end_date_string != row.end_date or event.end_time_string != row.end_time:
        return True
    if bool(event.is_all_day) != bool(row.is_all_day):
        return True
    if event.last_modified is not None:
        stored = parse_iso_datetime(row.external_last_modified)
        if stored is None or parse_iso_datetime(event.last_modified) > stored:
            return True
    return False
