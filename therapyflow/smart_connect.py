"""Smart Connect suggestions for clinical library entries.

Library entries are titled with a compact code such as ``ANXS1`` or
``DEPI12_2``: a 3-5 letter condition, an entry type (``S`` symptom, ``I``
intervention, ``P`` progress, ``G`` goal), a pathway number and an optional
variant.  When a clinician edits an entry, related entries are suggested in
two tiers:

* entries on the same condition and pathway (confidence 100);
* failing that, entries in clinically related categories that share a
  keyword with the current title or tags (confidence 60).

Everything else is available through a manual catalog.  The browsing state
(selection, category tab, search term, page size) is kept in an immutable
:class:`SmartConnectState` updated through :func:`reduce`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog

logger = structlog.get_logger(__name__)

PATTERN_RE = re.compile(r"^([A-Z]{3,5})([SIPG])(\d+)(?:_(\d+))?$")

PATTERN_CONFIDENCE = 100
KEYWORD_CONFIDENCE = 60
INITIAL_VISIBLE_COUNT = 10
LOAD_MORE_STEP = 20
MAX_VISIBLE_COUNT = 500
MIN_KEYWORD_LENGTH = 3

CATEGORY_RELATIONSHIPS: Dict[str, List[str]] = {
    "session focus": ["symptoms", "short-term goals", "interventions", "progress"],
    "symptoms": ["session focus", "interventions", "progress", "short-term goals"],
    "short-term goals": ["session focus", "interventions", "progress", "symptoms"],
    "interventions": ["session focus", "symptoms", "short-term goals", "progress"],
    "progress": ["session focus", "symptoms", "short-term goals", "interventions"],
}

Entry = Mapping[str, Any]


@dataclass(frozen=True)
class LibraryPattern:
    condition: str
    type: str
    pathway: str
    variant: Optional[str] = None


def parse_library_pattern(title: Optional[str]) -> Optional[LibraryPattern]:
    """Return the parsed code for *title* or ``None`` when it is not a code."""

    if not title:
        return None
    match = PATTERN_RE.match(title)
    if not match:
        return None
    return LibraryPattern(
        condition=match.group(1),
        type=match.group(2),
        pathway=match.group(3),
        variant=match.group(4),
    )


def related_categories(category_name: Optional[str]) -> List[str]:
    return list(CATEGORY_RELATIONSHIPS.get((category_name or "").lower(), []))


def _category_name(entry: Entry) -> str:
    category = entry.get("category") or {}
    return str(category.get("name") or "")


def _suggestion(entry: Entry, confidence: int, reason: str) -> Dict[str, Any]:
    payload = dict(entry)
    payload["confidence"] = confidence
    payload["reason"] = reason
    return payload


@dataclass(frozen=True)
class SuggestionBuckets:
    pattern_matches: Tuple[Dict[str, Any], ...] = ()
    keyword_matches: Tuple[Dict[str, Any], ...] = ()
    manual_catalog: Tuple[Entry, ...] = ()


def _keywords(title: str, tags: str) -> List[str]:
    words = title.lower().split(" ")
    tag_words = [tag.strip() for tag in (tags or "").lower().split(",")]
    return [word for word in [*words, *tag_words] if len(word) >= MIN_KEYWORD_LENGTH]


def _entry_keywords(entry: Entry) -> List[str]:
    words = str(entry.get("title") or "").lower().split(" ")
    tags = [str(tag).lower() for tag in (entry.get("tags") or [])]
    # Empty strings would be a substring of every keyword.
    return [word for word in [*words, *tags] if word]


def _shares_keyword(keywords: Sequence[str], candidates: Sequence[str]) -> bool:
    return any(
        existing in keyword or keyword in existing
        for keyword in keywords
        for existing in candidates
    )


def build_suggestion_buckets(
    current_title: str,
    current_tags: str,
    current_category_id: Optional[int],
    entries: Iterable[Entry],
    categories: Iterable[Mapping[str, Any]],
    current_entry_id: Optional[int] = None,
) -> SuggestionBuckets:
    """Split *entries* into pattern, keyword and manual suggestion tiers."""

    entries = list(entries)
    if not current_title:
        return SuggestionBuckets(manual_catalog=tuple(entries))

    others = [entry for entry in entries if entry.get("id") != current_entry_id]
    current_category = next(
        (category for category in categories if category.get("id") == current_category_id),
        None,
    )

    pattern_matches: List[Dict[str, Any]] = []
    current_pattern = parse_library_pattern(current_title)
    if current_pattern:
        reason = f"Same pathway #{current_pattern.pathway}"
        for entry in others:
            existing = parse_library_pattern(entry.get("title"))
            if (
                existing
                and existing.condition == current_pattern.condition
                and existing.pathway == current_pattern.pathway
            ):
                pattern_matches.append(_suggestion(entry, PATTERN_CONFIDENCE, reason))

    keyword_matches: List[Dict[str, Any]] = []
    if not pattern_matches and current_category is not None:
        keywords = _keywords(current_title, current_tags)
        if keywords:
            related = related_categories(current_category.get("name"))
            for entry in others:
                if entry.get("categoryId") == current_category_id:
                    continue
                if _category_name(entry).lower() not in related:
                    continue
                if _shares_keyword(keywords, _entry_keywords(entry)):
                    keyword_matches.append(
                        _suggestion(entry, KEYWORD_CONFIDENCE, "Shared keywords")
                    )

    logger.debug(
        "smart_connect_buckets_built",
        pattern_matches=len(pattern_matches),
        keyword_matches=len(keyword_matches),
        catalog=len(others),
    )
    return SuggestionBuckets(
        pattern_matches=tuple(pattern_matches),
        keyword_matches=tuple(keyword_matches),
        manual_catalog=tuple(others),
    )


# ---------------------------------------------------------------------------
# Browsing state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SmartConnectState:
    selected_ids: Tuple[int, ...] = ()
    active_category: Optional[str] = None
    search_term: str = ""
    visible_count: int = INITIAL_VISIBLE_COUNT
    buckets: SuggestionBuckets = field(default_factory=SuggestionBuckets)


INIT = "INIT"
TOGGLE_SELECTION = "TOGGLE_SELECTION"
SET_CATEGORY = "SET_CATEGORY"
SET_SEARCH = "SET_SEARCH"
LOAD_MORE = "LOAD_MORE"
SYNC_SELECTIONS = "SYNC_SELECTIONS"
CLEAR_SELECTIONS = "CLEAR_SELECTIONS"
SET_VISIBLE_COUNT = "SET_VISIBLE_COUNT"


def reduce(state: SmartConnectState, action: Mapping[str, Any]) -> SmartConnectState:
    """Return the state that results from applying *action* to *state*."""

    kind = action.get("type")
    payload = action.get("payload")
    if kind == INIT:
        return replace(state, buckets=payload)
    if kind == TOGGLE_SELECTION:
        if payload in state.selected_ids:
            return replace(
                state, selected_ids=tuple(i for i in state.selected_ids if i != payload)
            )
        return replace(state, selected_ids=(*state.selected_ids, payload))
    if kind == SET_CATEGORY:
        return replace(state, active_category=payload, visible_count=INITIAL_VISIBLE_COUNT)
    if kind == SET_SEARCH:
        return replace(state, search_term=payload or "", visible_count=INITIAL_VISIBLE_COUNT)
    if kind == LOAD_MORE:
        return replace(state, visible_count=state.visible_count + LOAD_MORE_STEP)
    if kind == SYNC_SELECTIONS:
        return replace(state, selected_ids=tuple(payload or ()))
    if kind == CLEAR_SELECTIONS:
        return replace(state, selected_ids=())
    if kind == SET_VISIBLE_COUNT:
        return replace(state, visible_count=max(1, min(int(payload), MAX_VISIBLE_COUNT)))
    return state


@dataclass(frozen=True)
class DisplayList:
    patterns: List[Dict[str, Any]]
    keywords: List[Dict[str, Any]]
    manual: List[Entry]
    total_count: int

    @property
    def has_more(self) -> bool:
        return len(self.manual) < self.total_count - len(self.patterns) - len(self.keywords)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "patterns": self.patterns,
            "keywords": self.keywords,
            "manual": [dict(entry) for entry in self.manual],
            "totalCount": self.total_count,
            "hasMore": self.has_more,
        }


def _matches_filters(entry: Entry, state: SmartConnectState) -> bool:
    if state.active_category and _category_name(entry) != state.active_category:
        return False
    if state.search_term:
        term = state.search_term.lower()
        title = str(entry.get("title") or "").lower()
        content = str(entry.get("content") or "").lower()
        if term not in title and term not in content:
            return False
    return True


def display_list(state: SmartConnectState) -> DisplayList:
    """Return the filtered entries to show for *state*."""

    buckets = state.buckets
    patterns = [entry for entry in buckets.pattern_matches if _matches_filters(entry, state)]
    keywords: List[Dict[str, Any]] = []
    if not buckets.pattern_matches:
        keywords = [entry for entry in buckets.keyword_matches if _matches_filters(entry, state)]

    shown = {entry.get("id") for entry in patterns} | {entry.get("id") for entry in keywords}
    remaining = [
        entry
        for entry in buckets.manual_catalog
        if _matches_filters(entry, state) and entry.get("id") not in shown
    ]
    return DisplayList(
        patterns=patterns,
        keywords=keywords,
        manual=remaining[: state.visible_count],
        total_count=len(patterns) + len(keywords) + len(remaining),
    )


def available_categories(entries: Iterable[Entry]) -> List[str]:
    return sorted({_category_name(entry) for entry in entries})


class SmartConnect:
    """Stateful wrapper tying suggestion buckets to the browsing reducer."""

    def __init__(
        self,
        entries: Sequence[Entry],
        categories: Sequence[Mapping[str, Any]],
        *,
        initial_selections: Iterable[int] = (),
    ) -> None:
        self._entries = list(entries)
        self._categories = list(categories)
        self.state = SmartConnectState(selected_ids=tuple(initial_selections))
        self._inputs: Optional[Tuple[Any, ...]] = None

    def update(
        self,
        current_title: str,
        current_tags: str,
        current_category_id: Optional[int],
        current_entry_id: Optional[int] = None,
    ) -> SmartConnectState:
        """Rebuild the suggestion buckets when the edited entry changes."""

        inputs = (current_title, current_tags, current_category_id, current_entry_id)
        if inputs != self._inputs:
            buckets = build_suggestion_buckets(
                current_title,
                current_tags,
                current_category_id,
                self._entries,
                self._categories,
                current_entry_id=current_entry_id,
            )
            self._inputs = inputs
            self.dispatch({"type": INIT, "payload": buckets})
        return self.state

    def dispatch(self, action: Mapping[str, Any]) -> SmartConnectState:
        self.state = reduce(self.state, action)
        return self.state

    def toggle_selection(self, entry_id: int) -> SmartConnectState:
        return self.dispatch({"type": TOGGLE_SELECTION, "payload": entry_id})

    def set_category(self, category: Optional[str]) -> SmartConnectState:
        return self.dispatch({"type": SET_CATEGORY, "payload": category})

    def set_search(self, term: str) -> SmartConnectState:
        return self.dispatch({"type": SET_SEARCH, "payload": term})

    def set_visible_count(self, count: int) -> SmartConnectState:
        return self.dispatch({"type": SET_VISIBLE_COUNT, "payload": count})

    def load_more(self) -> SmartConnectState:
        return self.dispatch({"type": LOAD_MORE})

    def sync_selections(self, ids: Iterable[int]) -> SmartConnectState:
        return self.dispatch({"type": SYNC_SELECTIONS, "payload": list(ids)})

    def clear_selections(self) -> SmartConnectState:
        return self.dispatch({"type": CLEAR_SELECTIONS})

    @property
    def display(self) -> DisplayList:
        return display_list(self.state)

    @property
    def available_categories(self) -> List[str]:
        return available_categories(self._entries)


__all__ = [
    "LibraryPattern",
    "SuggestionBuckets",
    "SmartConnectState",
    "DisplayList",
    "SmartConnect",
    "parse_library_pattern",
    "related_categories",
    "build_suggestion_buckets",
    "reduce",
    "display_list",
    "available_categories",
]
