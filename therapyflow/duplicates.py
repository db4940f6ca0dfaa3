"""Duplicate client detection.

Clients are compared pairwise on progressively weaker evidence.  Each client
joins at most one group: the first (strongest) rule that pairs it with
another client wins, and later rules only consider clients that are still
ungrouped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from therapyflow.clients import ClientNotFoundError
from therapyflow.db.models import Client
from therapyflow.time_utils import isoformat_utc

logger = structlog.get_logger(__name__)

SIMILAR_NAME_RATIO = 0.88
MIN_PHONE_DIGITS = 7

EXACT_NAME_DOB = "Exact name and date of birth"
MATCHING_EMAIL = "Matching email"
MATCHING_PHONE = "Matching phone"
SIMILAR_NAME = "Similar name"

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class DuplicateGroup:
    match_type: str
    confidence: str
    clients: List[Client] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "matchType": self.match_type,
            "confidence": self.confidence,
            "clients": [_client_summary(client) for client in self.clients],
        }


def _client_summary(client: Client) -> Dict[str, Any]:
    return {
        "id": client.id,
        "clientId": client.client_id,
        "fullName": client.full_name,
        "dateOfBirth": client.date_of_birth.isoformat() if client.date_of_birth else None,
        "email": client.email,
        "phone": client.phone,
        "status": client.status,
        "assignedTherapistId": client.assigned_therapist_id,
        "createdAt": isoformat_utc(client.created_at),
    }


def normalise_name(value: Optional[str]) -> str:
    text = _PUNCTUATION.sub("", (value or "").lower())
    return _WHITESPACE.sub(" ", text).strip()


def normalise_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def normalise_phone(value: Optional[str]) -> str:
    digits = re.sub(r"\D", "", value or "")
    if len(digits) < MIN_PHONE_DIGITS:
        return ""
    return digits[-10:]


def _names_similar(left: Client, right: Client) -> bool:
    a, b = normalise_name(left.full_name), normalise_name(right.full_name)
    if not a or not b:
        return False
    if left.date_of_birth and right.date_of_birth and left.date_of_birth != right.date_of_birth:
        return False
    return SequenceMatcher(None, a, b).ratio() >= SIMILAR_NAME_RATIO


def _exact_key(client: Client) -> Optional[tuple]:
    name = normalise_name(client.full_name)
    if not name or client.date_of_birth is None:
        return None
    return (name, client.date_of_birth)


def _group_by_key(
    clients: List[Client],
    key: Callable[[Client], Any],
    match_type: str,
    confidence: str,
    grouped: set,
) -> List[DuplicateGroup]:
    buckets: Dict[Any, List[Client]] = {}
    for client in clients:
        if client.id in grouped:
            continue
        value = key(client)
        if value:
            buckets.setdefault(value, []).append(client)

    groups = []
    for members in buckets.values():
        if len(members) < 2:
            continue
        grouped.update(member.id for member in members)
        groups.append(DuplicateGroup(match_type, confidence, members))
    return groups


def find_duplicate_groups(clients: Iterable[Client]) -> List[DuplicateGroup]:
    """Return groups of two or more clients that look like the same person."""

    candidates = [client for client in clients if not client.is_duplicate]
    grouped: set = set()

    groups = _group_by_key(candidates, _exact_key, EXACT_NAME_DOB, "high", grouped)
    groups += _group_by_key(
        candidates, lambda c: normalise_email(c.email), MATCHING_EMAIL, "high", grouped
    )
    groups += _group_by_key(
        candidates, lambda c: normalise_phone(c.phone), MATCHING_PHONE, "medium", grouped
    )

    remaining = [client for client in candidates if client.id not in grouped]
    for index, client in enumerate(remaining):
        if client.id in grouped:
            continue
        members = [client]
        for other in remaining[index + 1 :]:
            if other.id not in grouped and _names_similar(client, other):
                members.append(other)
        if len(members) > 1:
            grouped.update(member.id for member in members)
            groups.append(DuplicateGroup(SIMILAR_NAME, "low", members))

    logger.info("duplicate_groups_computed", clients=len(candidates), groups=len(groups))
    return groups


def detect_duplicates(session: Session) -> List[DuplicateGroup]:
    clients = session.execute(select(Client).order_by(Client.id)).scalars().all()
    return find_duplicate_groups(clients)


def mark_duplicate(session: Session, client_id: int, duplicate_of: Optional[int] = None) -> Client:
    """Flag *client_id* as a duplicate, optionally of another client."""

    client = session.get(Client, client_id)
    if client is None:
        raise ClientNotFoundError(client_id)
    if duplicate_of is not None:
        if duplicate_of == client_id:
            raise ValueError("a client cannot duplicate itself")
        if session.get(Client, duplicate_of) is None:
            raise ClientNotFoundError(duplicate_of)
    client.is_duplicate = True
    client.duplicate_of_id = duplicate_of
    session.flush()
    logger.info("client_marked_duplicate", client_id=client_id, duplicate_of=duplicate_of)
    return client


def unmark_duplicate(session: Session, client_id: int) -> Client:
    client = session.get(Client, client_id)
    if client is None:
        raise ClientNotFoundError(client_id)
    client.is_duplicate = False
    client.duplicate_of_id = None
    session.flush()
    logger.info("client_unmarked_duplicate", client_id=client_id)
    return client


__all__ = [
    "DuplicateGroup",
    "normalise_name",
    "normalise_email",
    "normalise_phone",
    "find_duplicate_groups",
    "detect_duplicates",
    "mark_duplicate",
    "unmark_duplicate",
]
