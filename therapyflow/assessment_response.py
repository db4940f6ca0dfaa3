"""Helpers for turning stored assessment answers into display strings.

Questions and responses are plain mappings in the API format
(``questionText``, ``allOptions``, ``options``, ``ratingMin``,
``ratingLabels`` and ``textResponse``, ``ratingValue``,
``selectedOptions``).  Choice questions saved before option rows existed
only carry positional options, and the oldest rows carry neither, so the
lookup falls back to positional options and finally to the canonical
option texts of the templates those rows came from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

NO_RESPONSE = "No response provided"
NO_SELECTION = "No selection made"

# Ordered; the first fragment contained in the question text wins.
LEGACY_QUESTION_OPTIONS: Tuple[Tuple[str, List[str]], ...] = (
    (
        "sadness",
        [
            "I do not feel sad.",
            "I feel sad much of the time.",
            "I am sad all the time.",
            "I am so sad or unhappy that I can't stand it.",
        ],
    ),
    (
        "pessimism",
        [
            "I am not discouraged about my future.",
            "I feel more discouraged about my future than I used to be.",
            "I do not expect things to work out for me.",
            "I feel my future is hopeless and will only get worse.",
        ],
    ),
    (
        "past failure",
        [
            "I do not feel like a failure.",
            "I have failed more than I should have.",
            "As I look back, I see a lot of failures.",
            "I feel I am a total failure as a person.",
        ],
    ),
    (
        "loss of pleasure",
        [
            "I get as much pleasure as I ever did from the things I enjoy.",
            "I don't enjoy things as much as I used to.",
            "I get very little pleasure from the things I used to enjoy.",
            "I can't get any pleasure from the things I used to enjoy.",
        ],
    ),
    (
        "guilty feelings",
        [
            "I don't feel particularly guilty.",
            "I feel guilty over many things I have done or should have done.",
            "I feel quite guilty most of the time.",
            "I feel guilty all of the time.",
        ],
    ),
    ("session format", ["In-Person", "Online", "Phone"]),
)
DEFAULT_LEGACY_OPTIONS = ["Yes", "No"]


@dataclass
class OptionLookup:
    by_id: Dict[int, str] = field(default_factory=dict)
    by_index: Dict[int, str] = field(default_factory=dict)


@dataclass
class ResponseDisplayResult:
    primary_text: str
    secondary_text: Optional[str] = None
    missing_option_ids: Optional[List[int]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"primaryText": self.primary_text}
        if self.secondary_text is not None:
            payload["secondaryText"] = self.secondary_text
        if self.missing_option_ids:
            payload["missingOptionIds"] = list(self.missing_option_ids)
        return payload


def legacy_question_options(question_text: Optional[str]) -> List[str]:
    text = (question_text or "").lower()
    for fragment, options in LEGACY_QUESTION_OPTIONS:
        if fragment in text:
            return list(options)
    return list(DEFAULT_LEGACY_OPTIONS)


def _coerce_id(raw: Any) -> Optional[int]:
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() else None
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            return None
    return None


def _option_text(option: Any) -> str:
    if not isinstance(option, Mapping):
        return ""
    return str(option.get("optionText") or option.get("text") or "")


def create_option_lookup(question: Mapping[str, Any]) -> OptionLookup:
    """Build id and position indexes for a question's options."""

    lookup = OptionLookup()

    all_options = question.get("allOptions")
    if isinstance(all_options, list) and all_options:
        for index, option in enumerate(all_options):
            text = _option_text(option)
            option_id = _coerce_id(option.get("id")) if isinstance(option, Mapping) else None
            if option_id is not None and option_id > 0:
                lookup.by_id[option_id] = text
            lookup.by_index[index] = text
        return lookup

    options = question.get("options")
    if isinstance(options, list) and options:
        for index, option in enumerate(options):
            lookup.by_index[index] = str(option)
        return lookup

    for index, option in enumerate(legacy_question_options(question.get("questionText"))):
        lookup.by_index[index] = option
    return lookup


def resolve_selected_option_texts(
    selected_ids: Optional[Iterable[Any]],
    lookup: OptionLookup,
    allow_index_fallback: bool = True,
) -> Tuple[List[str], List[int]]:
    """Return ``(texts, missing_ids)`` for the selected option identifiers."""

    texts: List[str] = []
    missing: List[int] = []
    if not selected_ids or not isinstance(selected_ids, (list, tuple)):
        return texts, missing

    for raw in selected_ids:
        option_id = _coerce_id(raw)
        if option_id is None:
            continue
        text = lookup.by_id.get(option_id)
        if text:
            texts.append(text)
            continue
        if allow_index_fallback:
            text = lookup.by_index.get(option_id)
            if text:
                texts.append(text)
                continue
        missing.append(option_id)
    return texts, missing


def format_response_display(
    question: Mapping[str, Any], response: Optional[Mapping[str, Any]]
) -> ResponseDisplayResult:
    """Describe *response* to *question* for reports and review screens."""

    if not response:
        return ResponseDisplayResult(NO_RESPONSE)

    text_response = response.get("textResponse")
    if text_response:
        return ResponseDisplayResult(str(text_response))

    rating = response.get("ratingValue")
    if rating is not None:
        labels = question.get("ratingLabels")
        if isinstance(labels, list):
            value, minimum = _coerce_id(rating), _coerce_id(question.get("ratingMin") or 0)
            label = None
            # Fractional or non-numeric ratings have no label.
            if value is not None and minimum is not None and 0 <= value - minimum < len(labels):
                label = labels[value - minimum]
            return ResponseDisplayResult(str(rating), secondary_text=str(label) if label else None)
        return ResponseDisplayResult(str(rating))

    selected = response.get("selectedOptions")
    if selected:
        texts, missing = resolve_selected_option_texts(selected, create_option_lookup(question))
        if missing:
            logger.warning(
                "assessment_option_ids_unresolved",
                question_id=question.get("id"),
                missing_ids=missing,
            )
        return ResponseDisplayResult(
            ", ".join(texts) if texts else NO_SELECTION,
            missing_option_ids=missing or None,
        )

    return ResponseDisplayResult(NO_RESPONSE)


__all__ = [
    "OptionLookup",
    "ResponseDisplayResult",
    "legacy_question_options",
    "create_option_lookup",
    "resolve_selected_option_texts",
    "format_response_display",
]
