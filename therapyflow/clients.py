"""Client data access helpers.

The helpers below centralise client search, pagination and identifier
generation so the HTTP handlers can remain thin while unit tests inject an
in-memory session.
"""

from __future__ import annotations

import math
import re
from datetime import date
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, aliased

from therapyflow.db.models import Client, ClientStage, ClientStatus, Task, TaskStatus, TherapySession, User
from therapyflow.time_utils import isoformat_utc, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 200
SORT_FIELDS = ("name", "status", "therapist", "lastSession", "createdAt")

_CLIENT_ID_RE = re.compile(r"^CL-(\d{4})-(\d+)$")


class ClientNotFoundError(Exception):
    """Raised when a client record does not exist."""


def format_client(
    client: Client,
    therapist: Optional[User] = None,
    session_count: int = 0,
    task_count: int = 0,
) -> Dict[str, Any]:
    """Normalise a client row into the API response format."""

    return {
        "id": client.id,
        "clientId": client.client_id,
        "fullName": client.full_name,
        "dateOfBirth": client.date_of_birth.isoformat() if client.date_of_birth else None,
        "email": client.email,
        "phone": client.phone,
        "gender": client.gender,
        "status": client.status,
        "stage": client.stage,
        "clientType": client.client_type,
        "hasPortalAccess": bool(client.has_portal_access),
        "isDuplicate": bool(client.is_duplicate),
        "assignedTherapistId": client.assigned_therapist_id,
        "assignedTherapist": (
            {"id": therapist.id, "fullName": therapist.full_name} if therapist is not None else None
        ),
        "lastSessionDate": isoformat_utc(client.last_session_date),
        "createdAt": isoformat_utc(client.created_at),
        "sessionCount": int(session_count or 0),
        "taskCount": int(task_count or 0),
    }


def list_clients(
    session: Session,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    search: Optional[str] = None,
    status: Optional[str] = None,
    therapist_id: Optional[int] = None,
    client_type: Optional[str] = None,
    has_portal_access: Optional[bool] = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> Dict[str, Any]:
    """Return one page of clients with session and open task counts."""

    page = max(1, int(page or 1))
    page_size = max(1, min(int(page_size or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE))
    therapist = aliased(User)

    conditions = []
    if search:
        pattern = f"%{search.strip().lower()}%"
        conditions.append(
            or_(
                func.lower(Client.full_name).like(pattern),
                func.lower(Client.email).like(pattern),
                func.lower(Client.phone).like(pattern),
                func.lower(Client.client_id).like(pattern),
            )
        )
    if status:
        conditions.append(Client.status == status)
    if therapist_id is not None:
        conditions.append(Client.assigned_therapist_id == therapist_id)
    if client_type:
        conditions.append(Client.client_type == client_type)
    if has_portal_access is not None:
        conditions.append(Client.has_portal_access.is_(has_portal_access))

    total = session.execute(select(func.count(Client.id)).where(*conditions)).scalar_one()

    session_count = (
        select(func.count(TherapySession.id))
        .where(TherapySession.client_id == Client.id)
        .correlate(Client)
        .scalar_subquery()
    )
    task_count = (
        select(func.count(Task.id))
        .where(Task.client_id == Client.id, Task.status != TaskStatus.COMPLETED.value)
        .correlate(Client)
        .scalar_subquery()
    )

    sort_columns = {
        "name": Client.full_name,
        "status": Client.status,
        "therapist": therapist.full_name,
        "lastSession": Client.last_session_date,
        "createdAt": Client.created_at,
    }
    column = sort_columns.get(sort_by, Client.created_at)
    ordering = column.asc() if sort_order == "asc" else column.desc()

    stmt = (
        select(Client, therapist, session_count, task_count)
        .outerjoin(therapist, Client.assigned_therapist_id == therapist.id)
        .where(*conditions)
        .order_by(ordering, Client.id.asc())
        .limit(page_size)
        .offset((page - 1) * page_size)
    )
    clients = [
        format_client(client, user, sessions, tasks)
        for client, user, sessions, tasks in session.execute(stmt)
    ]
    return {
        "clients": clients,
        "total": int(total),
        "totalPages": math.ceil(total / page_size) if total else 0,
    }


def get_client(session: Session, client_id: int) -> Client:
    client = session.get(Client, client_id)
    if client is None:
        raise ClientNotFoundError(client_id)
    return client


def generate_client_id(session: Session, year: Optional[int] = None) -> str:
    """Return the next ``CL-<year>-<NNNN>`` identifier for *year*."""

    year = year or utc_now().year
    prefix = f"CL-{year}-"
    existing = session.execute(
        select(Client.client_id).where(Client.client_id.like(f"{prefix}%"))
    ).scalars()
    highest = 0
    for value in existing:
        match = _CLIENT_ID_RE.match(value or "")
        if match:
            highest = max(highest, int(match.group(2)))
    return f"{prefix}{highest + 1:04d}"


def create_client(
    session: Session,
    full_name: str,
    *,
    date_of_birth: Optional[date] = None,
    year: Optional[int] = None,
    **fields: Any,
) -> Client:
    client = Client(
        client_id=generate_client_id(session, year),
        full_name=full_name,
        date_of_birth=date_of_birth,
        **fields,
    )
    session.add(client)
    session.flush()
    logger.info("client_created", client_id=client.client_id)
    return client


def client_stats(session: Session) -> Dict[str, int]:
    """Return client totals broken down by status and stage."""

    by_status = dict(
        session.execute(select(Client.status, func.count(Client.id)).group_by(Client.status)).all()
    )
    by_stage = dict(
        session.execute(select(Client.stage, func.count(Client.id)).group_by(Client.stage)).all()
    )
    return {
        "totalClients": int(sum(by_status.values())),
        "activeClients": int(by_status.get(ClientStatus.ACTIVE.value, 0)),
        "inactiveClients": int(by_status.get(ClientStatus.INACTIVE.value, 0)),
        "pendingClients": int(by_status.get(ClientStatus.PENDING.value, 0)),
        "newIntakes": int(by_stage.get(ClientStage.INTAKE.value, 0)),
        "assessmentPhase": int(by_stage.get(ClientStage.ASSESSMENT.value, 0)),
        "psychotherapy": int(by_stage.get(ClientStage.PSYCHOTHERAPY.value, 0)),
    }


__all__ = [
    "ClientNotFoundError",
    "SORT_FIELDS",
    "format_client",
    "list_clients",
    "get_client",
    "generate_client_id",
    "create_client",
    "client_stats",
]
