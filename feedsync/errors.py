"""Errors raised at the feed boundary."""

from __future__ import annotations


class FeedSyncError(RuntimeError):
    """Base class for failures that abort the sync of one calendar."""


class FeedFetchError(FeedSyncError):
    """Raised when the feed cannot be downloaded."""


class FeedParseError(FeedSyncError):
    """Raised when the downloaded feed is not valid iCalendar."""
