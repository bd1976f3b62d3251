from __future__ import annotations

import logging
from typing import Iterable

from feedsync.models import ExternalEventRow, FetchedEvent, SyncOptions
from feedsync.similarity import is_within_time_tolerance, token_overlap


logger = logging.getLogger(__name__)

SUMMARY_WEIGHT = 0.7
LOCATION_WEIGHT = 0.3


def fuzzy_score(event: FetchedEvent, row: ExternalEventRow) -> float:
    summary_overlap = token_overlap(event.summary, row.title)
    location_overlap = 0.0
    if event.location and row.location:
        location_overlap = token_overlap(event.location, row.location)
    return SUMMARY_WEIGHT * summary_overlap + LOCATION_WEIGHT * location_overlap


def match_by_uid(event: FetchedEvent, rows: list[ExternalEventRow]) -> ExternalEventRow | None:
    if not event.uid:
        return None
    for row in rows:
        if row.provider_event_uid == event.uid:
            return row
    return None


def _match_by_content(event: FetchedEvent, rows: list[ExternalEventRow]) -> ExternalEventRow | None:
    event_start = event.local_start
    if event_start is None:
        return None
    for row in rows:
        if row.title == event.summary and row.local_start == event_start:
            return row
    return None


def _match_fuzzy(
    event: FetchedEvent,
    rows: list[ExternalEventRow],
    options: SyncOptions,
) -> tuple[ExternalEventRow | None, float]:
    event_start = event.local_start
    if event_start is None:
        return None, 0.0
    best_row: ExternalEventRow | None = None
    best_score = 0.0
    for row in rows:
        row_start = row.local_start
        if row_start is None:
            continue
        if not is_within_time_tolerance(event_start, row_start, options.dt_tolerance_seconds):
            continue
        score = fuzzy_score(event, row)
        if score < options.fuzzy_threshold:
            continue
        # Strict comparison keeps the first-seen row on ties.
        if best_row is None or score > best_score:
            best_row = row
            best_score = score
    return best_row, best_score


def match_event(
    event: FetchedEvent,
    candidate_rows: Iterable[ExternalEventRow],
    options: SyncOptions | None = None,
) -> ExternalEventRow | None:
    """Find the persisted row that represents ``event``.

    Tiers are tried in order and the first hit wins: provider uid, then exact
    title plus local start, then a fuzzy title/location score restricted to
    rows starting within ``dt_tolerance_seconds``.
    """
    options = options or SyncOptions()
    rows = list(candidate_rows)

    row = match_by_uid(event, rows)
    if row is not None:
        logger.debug("matched uid=%s to row=%s by uid", event.uid, row.id)
        return row

    row = _match_by_content(event, rows)
    if row is not None:
        logger.debug("matched uid=%s to row=%s by title and start", event.uid, row.id)
        return row

    row, score = _match_fuzzy(event, rows, options)
    if row is not None:
        logger.debug("matched uid=%s to row=%s by fuzzy score %.3f", event.uid, row.id, score)
    return row
