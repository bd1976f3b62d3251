from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from feedsync.models import CategoryConfig


UNKNOWN_CATEGORY_NAME = "Ukendt"


@dataclass
class CategoryKeywords:
    category_name: str
    keywords: list[str]
    priority: int


@dataclass
class CategoryResolution:
    category: CategoryConfig
    confidence: int
    reason: str
    matched_value: str


DEFAULT_CATEGORY_KEYWORDS = [
    CategoryKeywords(
        "Kamp",
        ["kamp", "match", "game", "turnering", "tournament", "finale", "semifinale", "kvartfinale", "vs"],
        10,
    ),
    CategoryKeywords("Træning", ["træning", "training", "practice", "øvelse", "drill", "session"], 9),
    CategoryKeywords(
        "Fysisk træning", ["fysisk", "fitness", "kondition", "styrke", "cardio", "løb", "gym", "vægt"], 8
    ),
    CategoryKeywords(
        "Taktik",
        ["taktik", "tactics", "strategi", "strategy", "analyse", "video", "gennemgang", "videomøde"],
        8,
    ),
    CategoryKeywords(
        "Møde",
        ["møde", "meeting", "samtale", "briefing", "debriefing", "evaluering", "forældremøde", "spillermøde"],
        7,
    ),
    CategoryKeywords("Holdsamling", ["holdsamling", "team building", "social", "sammenkomst", "fest"], 7),
    CategoryKeywords(
        "Lægebesøg", ["læge", "doctor", "fysioterapi", "physio", "behandling", "skade", "injury", "sundhed"], 6
    ),
    CategoryKeywords("Rejse", ["rejse", "travel", "transport", "bus", "fly", "flight", "afgang", "departure"], 6),
]


def _normalize(value: str | None) -> str:
    return (value or "").strip().lower()


def _build_lookups(
    categories: Iterable[CategoryConfig],
) -> tuple[dict[str, CategoryConfig], dict[str, CategoryConfig]]:
    by_id: dict[str, CategoryConfig] = {}
    by_name: dict[str, CategoryConfig] = {}
    for category in categories:
        by_id[category.id] = category
        name_key = _normalize(category.name)
        existing = by_name.get(name_key)
        # User categories shadow system categories of the same name.
        if existing is None or (existing.is_system and not category.is_system):
            by_name[name_key] = category
    return by_id, by_name


def is_unknown_category(category: CategoryConfig | None) -> bool:
    return category is None or _normalize(category.name) == _normalize(UNKNOWN_CATEGORY_NAME)


def resolve_category(
    title: str,
    categories: list[CategoryConfig],
    external_categories: list[str] | None = None,
    category_mappings: dict[str, str] | None = None,
    keywords: list[CategoryKeywords] | None = None,
) -> CategoryResolution | None:
    """Pick a local category for an event title.

    Provider categories with an explicit mapping win outright; otherwise the
    highest scoring keyword hit is used, whole-word hits scoring above
    substring hits; finally a category whose name appears in the title.
    """
    if not title or not categories:
        return None
    normalized_title = _normalize(title)
    by_id, by_name = _build_lookups(categories)

    if external_categories and category_mappings:
        mapping_lookup = {_normalize(key): value for key, value in category_mappings.items()}
        for external in external_categories:
            mapped_id = mapping_lookup.get(_normalize(external))
            if mapped_id and mapped_id in by_id:
                return CategoryResolution(
                    category=by_id[mapped_id],
                    confidence=100,
                    reason="external-mapping",
                    matched_value=external,
                )

    definitions = sorted(keywords or DEFAULT_CATEGORY_KEYWORDS, key=lambda item: item.priority, reverse=True)
    best: CategoryResolution | None = None
    best_score = -1
    for definition in definitions:
        category = by_name.get(_normalize(definition.category_name))
        if category is None:
            continue
        for keyword in definition.keywords:
            normalized_keyword = _normalize(keyword)
            if not normalized_keyword:
                continue
            if re.search(rf"\b{re.escape(normalized_keyword)}\b", normalized_title):
                score = definition.priority * 10 + 5
            elif normalized_keyword in normalized_title:
                score = definition.priority * 10
            else:
                continue
            if score > best_score:
                best_score = score
                best = CategoryResolution(
                    category=category,
                    confidence=min(100, score),
                    reason="keyword-match",
                    matched_value=keyword,
                )
    if best is not None:
        return best

    for name_key, category in by_name.items():
        if name_key and name_key in normalized_title:
            return CategoryResolution(category=category, confidence=60, reason="name-match", matched_value=category.name)
    return None
