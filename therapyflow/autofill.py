"""Autofill variables for clinical form templates.

Templates reference values as ``{{CLIENT_NAME}}``.  A placeholder whose
value is unknown or empty is left in place so staff can spot it.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Mapping, Optional

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")

# (variable, section, field, description, category)
_VARIABLES = (
    ("CLIENT_NAME", "client", "fullName", "Client full name", "Client Information"),
    ("CLIENT_FULL_NAME", "client", "fullName", "Client full name (same as CLIENT_NAME)", "Client Information"),
    ("CLIENT_ID", "client", "clientId", "Client ID number", "Client Information"),
    ("CLIENT_EMAIL", "client", "email", "Client email address", "Client Information"),
    ("CLIENT_PHONE", "client", "phone", "Client phone number", "Client Information"),
    ("CLIENT_DOB", "client", "dateOfBirth", "Client date of birth", "Client Information"),
    ("THERAPIST_NAME", "therapist", "fullName", "Therapist full name", "Therapist Information"),
    (
        "THERAPIST_FULL_NAME",
        "therapist",
        "fullName",
        "Therapist full name (same as THERAPIST_NAME)",
        "Therapist Information",
    ),
    ("THERAPIST_EMAIL", "therapist", "email", "Therapist email address", "Therapist Information"),
    ("THERAPIST_PHONE", "therapist", "phone", "Therapist phone number", "Therapist Information"),
    ("PRACTICE_NAME", "practice", "name", "Practice/clinic name", "Practice Information"),
    ("PRACTICE_ADDRESS", "practice", "address", "Practice full address", "Practice Information"),
    ("PRACTICE_PHONE", "practice", "phone", "Practice phone number", "Practice Information"),
    ("PRACTICE_EMAIL", "practice", "email", "Practice email address", "Practice Information"),
    ("PRACTICE_WEBSITE", "practice", "website", "Practice website URL", "Practice Information"),
)


def build_autofill_map(data: Mapping[str, Any]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for variable, section, key, _description, _category in _VARIABLES:
        source = data.get(section) or {}
        value = source.get(key)
        values[variable] = str(value) if value else ""
    return values


def available_autofill_variables() -> List[Dict[str, str]]:
    return [
        {"variable": "{{%s}}" % variable, "description": description, "category": category}
        for variable, _section, _key, description, category in _VARIABLES
    ]


def replace_autofill_variables(
    template: str,
    values: Mapping[str, str],
    escape: Optional[Callable[[str], str]] = None,
) -> str:
    def _substitute(match: "re.Match[str]") -> str:
        value = values.get(match.group(1).strip())
        if value:
            return escape(value) if escape else value
        return match.group(0)

    return _PLACEHOLDER.sub(_substitute, template or "")


__all__ = ["build_autofill_map", "available_autofill_variables", "replace_autofill_variables"]
