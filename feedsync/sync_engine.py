from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from feedsync.categories import UNKNOWN_CATEGORY_NAME, is_unknown_category, resolve_category
from feedsync.config_manager import ConfigManager
from feedsync.errors import FeedSyncError
from feedsync.ics_client import fetch_feed
from feedsync.models import AppConfig, FeedConfig, FetchedEvent, SyncResult
from feedsync.reconciler import compute_sync_ops
from feedsync.state_store import StateStore


logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class CategoryPicker:
    """Chooses local categories from the configured category list."""

    def __init__(self, config: AppConfig) -> None:
        self.categories = list(config.categories)
        self.mappings = dict(config.category_mappings)
        self.by_id = {category.id: category for category in self.categories}
        unknown = [c for c in self.categories if c.name.strip().lower() == UNKNOWN_CATEGORY_NAME.lower()]
        unknown.sort(key=lambda c: not c.is_system)
        self.unknown_id: str | None = unknown[0].id if unknown else None

    def choose(self, title: str, external_categories: list[str] | None = None) -> str | None:
        resolution = resolve_category(title, self.categories, external_categories, self.mappings)
        if resolution is None:
            return self.unknown_id
        return resolution.category.id

    def for_event(self, event: FetchedEvent) -> str | None:
        return self.choose(event.summary, event.categories)

    def is_unknown(self, category_id: str | None) -> bool:
        category = self.by_id.get(category_id) if category_id else None
        return is_unknown_category(category)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def run_once(self, trigger: str = "manual") -> list[SyncResult]:
        config = self.config_manager.load()
        results: list[SyncResult] = []
        for feed in config.feeds:
            if not feed.enabled:
                logger.info("skipping disabled feed %s", feed.calendar_id)
                continue
            results.append(self.sync_feed(feed, config, trigger=trigger))
        if not results:
            logger.info("no enabled feeds configured")
        return results

    def sync_feed(self, feed: FeedConfig, config: AppConfig, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_sync_run(calendar_id=feed.calendar_id, trigger=trigger)

        try:
            events = fetch_feed(
                feed.url,
                timeout_seconds=config.sync.timeout_seconds,
                local_timezone=config.sync.local_timezone,
            )
        except FeedSyncError as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.warning("sync of %s aborted before planning: %s", feed.calendar_id, message)
            return self._finish(run_id, feed, trigger, started_at, "failed", message, {})
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.exception("sync of %s failed while reading the feed", feed.calendar_id)
            return self._finish(run_id, feed, trigger, started_at, "failed", message, {})

        try:
            now = self.clock()
            rows = self.state_store.load_rows(feed.calendar_id)
            ops = compute_sync_ops(
                events,
                rows,
                method_cancel=config.sync.method_cancel,
                options=config.sync.to_options(now=now),
            )
            picker = CategoryPicker(config)
            summary = self.state_store.apply_operations(
                feed.calendar_id,
                ops,
                run_id=run_id,
                category_for=picker.for_event,
                now=now,
            )
            backfilled = self._backfill_categories(feed.calendar_id, picker)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.exception("sync of %s failed while applying changes", feed.calendar_id)
            return self._finish(run_id, feed, trigger, started_at, "failed", message, {})

        counts = summary.to_dict()
        counts["fetched"] = len(events)
        counts["categories_backfilled"] = backfilled
        message = (
            f"Synced {len(events)} events: {summary.created} created, {summary.updated} updated, "
            f"{summary.restored} restored, {summary.soft_deleted} soft-deleted, "
            f"{summary.immediately_deleted} cancelled."
        )
        logger.info("%s: %s", feed.name or feed.calendar_id, message)
        return self._finish(run_id, feed, trigger, started_at, "success", message, counts)

    def _finish(
        self,
        run_id: int,
        feed: FeedConfig,
        trigger: str,
        started_at: datetime,
        status: str,
        message: str,
        counts: dict[str, int],
    ) -> SyncResult:
        duration_ms = _elapsed_ms(started_at)
        self.state_store.finish_sync_run(
            run_id=run_id,
            status=status,
            message=message,
            duration_ms=duration_ms,
            counts=counts,
        )
        return SyncResult(
            calendar_id=feed.calendar_id,
            status=status,
            message=message,
            duration_ms=duration_ms,
            trigger=trigger,
            counts=counts,
        )

    def _backfill_categories(self, calendar_id: str, picker: CategoryPicker) -> int:
        """Fill in categories for rows that lack one; hand-picked categories are never touched."""
        if not picker.categories:
            return 0
        backfilled = 0
        for row, meta in self.state_store.meta_backfill_candidates(calendar_id):
            if meta is not None and not picker.is_unknown(meta.get("category_id")):
                continue
            provider_categories = [
                str(item).strip() for item in row.raw_payload.get("categories") or [] if str(item).strip()
            ]
            category_id = picker.choose(row.title, provider_categories)
            if meta is not None and category_id == meta.get("category_id"):
                continue
            self.state_store.set_category(row.id, category_id, manual=False)
            backfilled += 1
        return backfilled
