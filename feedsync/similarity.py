from __future__ import annotations

import re
from datetime import datetime


NON_TOKEN_PATTERN = re.compile(r"[^a-z0-9æøå\s]")
MIN_TOKEN_LENGTH = 3


def tokenize(text: str | None) -> set[str]:
    if not text:
        return set()
    normalized = NON_TOKEN_PATTERN.sub(" ", text.lower()).strip()
    return {token for token in normalized.split() if len(token) >= MIN_TOKEN_LENGTH}


def token_overlap(a: str | None, b: str | None) -> float:
    """Jaccard index of the token sets of ``a`` and ``b``; 0 if either is empty."""
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def is_within_time_tolerance(t1: datetime, t2: datetime, tolerance_seconds: float) -> bool:
    return abs((t1 - t2).total_seconds()) <= tolerance_seconds
