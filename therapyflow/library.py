"""Clinical library data access helpers.

Entries are returned as plain dictionaries in the API response format so
they can be fed directly into :mod:`therapyflow.smart_connect`.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, aliased

from therapyflow.db.models import LibraryCategory, LibraryEntry, LibraryEntryConnection, User
from therapyflow.time_utils import isoformat_utc

logger = structlog.get_logger(__name__)


class LibraryEntryNotFoundError(Exception):
    """Raised when a library entry does not exist or is inactive."""


def _category_payload(category: Optional[LibraryCategory]) -> Optional[Dict[str, Any]]:
    if category is None:
        return None
    return {"id": category.id, "name": category.name, "parentId": category.parent_id}


def format_entry(
    entry: LibraryEntry,
    category: Optional[LibraryCategory] = None,
    created_by: Optional[User] = None,
) -> Dict[str, Any]:
    """Normalise an ORM entry into the API response format."""

    payload: Dict[str, Any] = {
        "id": entry.id,
        "categoryId": entry.category_id,
        "title": entry.title,
        "content": entry.content,
        "tags": list(entry.tags or []),
        "usageCount": entry.usage_count or 0,
        "isActive": bool(entry.is_active),
        "createdAt": isoformat_utc(entry.created_at),
        "category": _category_payload(category),
    }
    if created_by is not None:
        payload["createdBy"] = {"id": created_by.id, "username": created_by.username}
    return payload


def list_categories(session: Session) -> List[Dict[str, Any]]:
    rows = session.execute(
        select(LibraryCategory)
        .where(LibraryCategory.is_active.is_(True))
        .order_by(LibraryCategory.sort_order, LibraryCategory.name)
    ).scalars()
    return [_category_payload(row) for row in rows]


def list_entries(session: Session, category_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Return active entries joined with their category and creator."""

    stmt = (
        select(LibraryEntry, LibraryCategory, User)
        .join(LibraryCategory, LibraryEntry.category_id == LibraryCategory.id)
        .outerjoin(User, LibraryEntry.created_by_id == User.id)
        .where(LibraryEntry.is_active.is_(True))
    )
    if category_id is not None:
        stmt = stmt.where(LibraryEntry.category_id == category_id)
    stmt = stmt.order_by(LibraryCategory.sort_order, LibraryEntry.title)
    return [format_entry(entry, category, user) for entry, category, user in session.execute(stmt)]


def search_entries(
    session: Session, query: str, category_id: Optional[int] = None
) -> List[Dict[str, Any]]:
    """Case-insensitive title/content search ordered by popularity."""

    pattern = f"%{(query or '').lower()}%"
    stmt = (
        select(LibraryEntry, LibraryCategory, User)
        .join(LibraryCategory, LibraryEntry.category_id == LibraryCategory.id)
        .outerjoin(User, LibraryEntry.created_by_id == User.id)
        .where(
            LibraryEntry.is_active.is_(True),
            or_(
                func.lower(LibraryEntry.title).like(pattern),
                func.lower(LibraryEntry.content).like(pattern),
            ),
        )
    )
    if category_id is not None:
        stmt = stmt.where(LibraryEntry.category_id == category_id)
    stmt = stmt.order_by(LibraryEntry.usage_count.desc(), LibraryEntry.title.asc())
    return [format_entry(entry, category, user) for entry, category, user in session.execute(stmt)]


def increment_usage(session: Session, entry_id: int) -> int:
    """Bump the usage counter for *entry_id* and return the new value."""

    entry = session.get(LibraryEntry, entry_id)
    if entry is None or not entry.is_active:
        raise LibraryEntryNotFoundError(entry_id)
    entry.usage_count = (entry.usage_count or 0) + 1
    session.flush()
    return entry.usage_count


def connected_entries(session: Session, entry_id: int) -> List[Dict[str, Any]]:
    """Return entries connected to *entry_id* in either direction."""

    if session.get(LibraryEntry, entry_id) is None:
        raise LibraryEntryNotFoundError(entry_id)

    other = aliased(LibraryEntry)
    join_condition = or_(
        and_(LibraryEntryConnection.to_entry_id == other.id, LibraryEntryConnection.from_entry_id == entry_id),
        and_(LibraryEntryConnection.from_entry_id == other.id, LibraryEntryConnection.to_entry_id == entry_id),
    )
    stmt = (
        select(other, LibraryCategory, LibraryEntryConnection.connection_type, LibraryEntryConnection.strength)
        .select_from(LibraryEntryConnection)
        .join(other, join_condition)
        .outerjoin(LibraryCategory, other.category_id == LibraryCategory.id)
        .where(
            LibraryEntryConnection.is_active.is_(True),
            other.is_active.is_(True),
        )
        .order_by(LibraryEntryConnection.strength.desc())
    )
    results: List[Dict[str, Any]] = []
    for entry, category, connection_type, strength in session.execute(stmt):
        payload = format_entry(entry, category)
        payload["connectionType"] = connection_type
        payload["connectionStrength"] = strength
        results.append(payload)
    return results


def connected_entries_bulk(session: Session, entry_ids: Iterable[int]) -> Dict[int, List[Dict[str, Any]]]:
    """Return a map of entry id to connected entries; unknown ids map to ``[]``."""

    mapping: Dict[int, List[Dict[str, Any]]] = {}
    for entry_id in dict.fromkeys(entry_ids):
        try:
            mapping[entry_id] = connected_entries(session, entry_id)
        except LibraryEntryNotFoundError:
            logger.info("library_connected_entry_missing", entry_id=entry_id)
            mapping[entry_id] = []
    return mapping


def flatten_connections(mapping: Mapping[int, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Flatten a bulk connection map, keeping the first occurrence of each entry."""

    unique: Dict[Any, Dict[str, Any]] = {}
    for items in mapping.values():
        for item in items:
            unique.setdefault(item.get("id"), item)
    return list(unique.values())


__all__ = [
    "LibraryEntryNotFoundError",
    "format_entry",
    "list_categories",
    "list_entries",
    "search_entries",
    "increment_usage",
    "connected_entries",
    "connected_entries_bulk",
    "flatten_connections",
]
