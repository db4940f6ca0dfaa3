"""FastAPI application exposing the TherapyFlow practice APIs."""

from __future__ import annotations

import html
import logging
import os
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

import structlog
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, Histogram, generate_latest
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import text
from sqlalchemy.orm import Session
from structlog.contextvars import bind_contextvars, unbind_contextvars

from therapyflow import APP_NAME
from therapyflow import assessment_response, assessments, autofill, clients, duplicates
from therapyflow import library, scheduling, smart_connect, tasks
from therapyflow.db import get_session, init_db, session_scope
from therapyflow.db.models import TherapySession, User
from therapyflow.notification_seeds import sync_notification_triggers
from therapyflow.notifications_service import (
    InvalidConditionError,
    NotificationNotFoundError,
    NotificationService,
    parse_conditions,
    serialise_notification,
    serialise_preference,
    serialise_template,
    serialise_trigger,
)
from therapyflow.sanitizer import sanitize_text
from therapyflow.time_utils import parse_datetime

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

NOTIFICATION_HISTORY_LIMIT = int(os.getenv("NOTIFICATION_HISTORY_LIMIT", "50"))


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

_PATH_PARAM_RE = re.compile(r"/(?:[0-9]+|[0-9a-fA-F]{8,})")


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


REQUEST_COUNTER = _get_or_create_metric(
    Counter,
    "therapyflow_http_requests_total",
    "Total HTTP requests processed by the API",
    ("method", "endpoint", "status"),
)
REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "therapyflow_http_request_latency_seconds",
    "Latency of HTTP requests",
    ("method", "endpoint"),
)


def _normalise_path_for_metrics(path: str) -> str:
    """Reduce high-cardinality segments in request paths for metrics labels."""

    if not path:
        return "/"
    return _PATH_PARAM_RE.sub("/:param", path)


# ---------------------------------------------------------------------------
# Response envelopes
# ---------------------------------------------------------------------------


class SuccessResponse(BaseModel):
    """Standard successful response envelope."""

    success: Literal[True] = True
    data: Any | None = None

    model_config = {"extra": "allow"}


def _success_payload(data: Any = None, **extra: Any) -> Dict[str, Any]:
    payload = SuccessResponse(data=data).model_dump()
    payload.update(extra)
    return payload


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


_ERROR_MESSAGE_KEYS = ("message", "detail", "error", "msg")


def _build_error_response(payload: Any, status_code: int | None = None) -> ErrorResponse:
    """Normalize ``payload`` into the standard :class:`ErrorResponse` structure."""

    code: int | str | None = status_code
    message = "An error occurred"
    details: Any | None = None

    if isinstance(payload, dict):
        if payload.get("code") not in (None, ""):
            code = payload["code"]
        details = payload.get("details")
        for key in _ERROR_MESSAGE_KEYS:
            if payload.get(key) not in (None, ""):
                message = str(payload[key])
                break
    elif isinstance(payload, list):
        details = payload
        rendered = [str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in payload]
        if rendered:
            message = "; ".join(rendered)
    elif payload not in (None, ""):
        message = str(payload)

    error_payload: Dict[str, Any] = {"message": message, "code": code}
    if details is not None:
        error_payload["details"] = details
    return ErrorResponse(error=ErrorDetail(**error_payload))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

START_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised by the server entrypoint
    logger.info("lifespan_startup")
    init_db()
    with session_scope() as session:
        sync_notification_triggers(session)
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete", uptime=round(time.time() - START_TIME, 2))


app = FastAPI(title=f"{APP_NAME} API", lifespan=lifespan)


@app.middleware("http")
async def track_http_metrics(request: Request, call_next):
    """Emit Prometheus counters and histograms for each request."""

    start = time.perf_counter()
    normalised = _normalise_path_for_metrics(request.url.path)
    try:
        response = await call_next(request)
    except Exception:
        REQUEST_COUNTER.labels(request.method, normalised, "500").inc()
        REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
        raise
    REQUEST_COUNTER.labels(request.method, normalised, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
    return response


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed")
        raise
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        unbind_contextvars("trace_id", "path", "method")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    error_payload = _build_error_response(exc.detail, status_code=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload.model_dump(exclude_none=True),
        headers=dict(exc.headers or {}),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    error_payload = _build_error_response(
        {"message": "Request validation failed", "details": details},
        status_code=422,
    )
    return JSONResponse(
        status_code=422,
        content=error_payload.model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def get_current_user(
    x_user_id: Optional[int] = Header(None, alias="X-User-Id"),
    session: Session = Depends(get_session),
) -> User:
    """Resolve the acting user from the ``X-User-Id`` header."""

    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    user = session.get(User, x_user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    bind_contextvars(user_id=user.id)
    return user


def require_roles(*roles: str):
    """Dependency factory ensuring the current user is in an allowed role."""

    allowed = {"admin", *roles}

    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            logger.warning("access_denied", user_id=user.id, role=user.role)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
        return user

    return checker


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
def health(session: Session = Depends(get_session)):
    """Lightweight health check that also pings the database."""

    try:
        session.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        logger.exception("health_database_ping_failed")
        db_ok = False
    return {"status": "ok", "uptime": round(time.time() - START_TIME, 2), "db": db_ok}


@app.get("/metrics", tags=["system"], response_model=None)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class MarkDuplicateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    duplicateOf: Optional[int] = Field(None, alias="duplicateOfClientId")


@app.get("/api/clients", tags=["clients"])
def list_clients_endpoint(
    page: int = Query(1, ge=1),
    page_size: int = Query(clients.DEFAULT_PAGE_SIZE, ge=1, le=clients.MAX_PAGE_SIZE, alias="pageSize"),
    search: Optional[str] = None,
    client_status: Optional[str] = Query(None, alias="status"),
    therapist_id: Optional[int] = Query(None, alias="therapistId"),
    client_type: Optional[str] = Query(None, alias="clientType"),
    has_portal_access: Optional[bool] = Query(None, alias="hasPortalAccess"),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    if sort_by not in clients.SORT_FIELDS:
        raise HTTPException(status_code=400, detail=f"Unsupported sort field: {sort_by}")
    return clients.list_clients(
        session,
        page=page,
        page_size=page_size,
        search=search,
        status=client_status,
        therapist_id=therapist_id,
        client_type=client_type,
        has_portal_access=has_portal_access,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@app.get("/api/clients/stats", tags=["clients"])
def client_stats_endpoint(
    user: User = Depends(get_current_user), session: Session = Depends(get_session)
):
    return clients.client_stats(session)


@app.get("/api/clients/duplicates", tags=["clients"])
def duplicate_clients_endpoint(
    user: User = Depends(require_roles("supervisor")), session: Session = Depends(get_session)
):
    groups = duplicates.detect_duplicates(session)
    return {
        "duplicateGroups": [group.as_dict() for group in groups],
        "totalDuplicates": sum(len(group.clients) for group in groups),
    }


@app.post("/api/clients/{client_id}/mark-duplicate", tags=["clients"])
def mark_duplicate_endpoint(
    client_id: int,
    payload: MarkDuplicateModel,
    user: User = Depends(require_roles("supervisor")),
    session: Session = Depends(get_session),
):
    try:
        client = duplicates.mark_duplicate(session, client_id, payload.duplicateOf)
    except clients.ClientNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"Client {exc.args[0]} not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return clients.format_client(client)


@app.post("/api/clients/{client_id}/unmark-duplicate", tags=["clients"])
def unmark_duplicate_endpoint(
    client_id: int,
    user: User = Depends(require_roles("supervisor")),
    session: Session = Depends(get_session),
):
    try:
        client = duplicates.unmark_duplicate(session, client_id)
    except clients.ClientNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"Client {client_id} not found") from exc
    return clients.format_client(client)


# ---------------------------------------------------------------------------
# Sessions and tasks
# ---------------------------------------------------------------------------


@app.get("/api/sessions/conflicts/check", tags=["scheduling"])
def check_session_conflicts(
    therapist_id: int = Query(..., alias="therapistId"),
    session_date: str = Query(..., alias="sessionDate"),
    duration: int = Query(scheduling.DEFAULT_DURATION_MINUTES, ge=1),
    exclude_session_id: Optional[int] = Query(None, alias="excludeSessionId"),
    room_id: Optional[int] = Query(None, alias="roomId"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    start = parse_datetime(session_date)
    if start is None:
        raise HTTPException(status_code=400, detail="sessionDate must be an ISO 8601 timestamp")
    result = scheduling.check_conflicts(
        session,
        therapist_id,
        start,
        duration=duration,
        exclude_session_id=exclude_session_id,
        room_id=room_id,
    )
    return result.as_dict()


@app.get("/api/sessions/{session_id}/calendar.ics", tags=["scheduling"], response_model=None)
def export_session_calendar(
    session_id: int,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Response:
    row = session.get(TherapySession, session_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    summary = f"Therapy session: {row.client.full_name}" if row.client else scheduling.DEFAULT_EVENT_SUMMARY
    return Response(content=scheduling.export_session_ics(row, summary), media_type="text/calendar")


@app.get("/api/tasks/pending/count", tags=["tasks"])
def pending_task_count_endpoint(
    assigned_to_id: Optional[int] = Query(None, alias="assignedToId"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return {"count": tasks.pending_task_count(session, assigned_to_id)}


# ---------------------------------------------------------------------------
# Clinical library
# ---------------------------------------------------------------------------


class BulkConnectionsModel(BaseModel):
    entryIds: List[int] = Field(default_factory=list)


class SmartConnectModel(BaseModel):
    currentTitle: str = ""
    currentTags: str = ""
    currentCategoryId: Optional[int] = None
    currentEntryId: Optional[int] = None
    selectedIds: List[int] = Field(default_factory=list)
    activeCategory: Optional[str] = None
    searchTerm: str = ""
    visibleCount: int = Field(smart_connect.INITIAL_VISIBLE_COUNT, ge=1, le=smart_connect.MAX_VISIBLE_COUNT)


@app.get("/api/library/search", tags=["library"])
def search_library(
    q: str = Query("", max_length=200),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return library.search_entries(session, q, category_id)


@app.get("/api/library/entries/{entry_id}/connected", tags=["library"])
def connected_library_entries(
    entry_id: int,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        return library.connected_entries(session, entry_id)
    except library.LibraryEntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"Library entry {entry_id} not found") from exc


@app.post("/api/library/entries/connected-bulk", tags=["library"])
def connected_library_entries_bulk(
    payload: BulkConnectionsModel,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    mapping = library.connected_entries_bulk(session, payload.entryIds)
    return {
        "connections": {str(key): value for key, value in mapping.items()},
        "entries": library.flatten_connections(mapping),
    }


@app.post("/api/library/entries/{entry_id}/increment-usage", tags=["library"])
def increment_library_usage(
    entry_id: int,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        usage = library.increment_usage(session, entry_id)
    except library.LibraryEntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"Library entry {entry_id} not found") from exc
    return {"id": entry_id, "usageCount": usage}


@app.post("/api/library/smart-connect", tags=["library"])
def smart_connect_suggestions(
    payload: SmartConnectModel,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Return Smart Connect suggestions and the filtered catalog for an entry being edited."""

    entries = library.list_entries(session)
    connector = smart_connect.SmartConnect(
        entries, library.list_categories(session), initial_selections=payload.selectedIds
    )
    connector.update(
        payload.currentTitle,
        payload.currentTags,
        payload.currentCategoryId,
        current_entry_id=payload.currentEntryId,
    )
    if payload.activeCategory:
        connector.set_category(payload.activeCategory)
    if payload.searchTerm:
        connector.set_search(payload.searchTerm)
    if payload.visibleCount != connector.state.visible_count:
        connector.set_visible_count(payload.visibleCount)

    display = connector.display.as_dict()
    display["selectedIds"] = list(connector.state.selected_ids)
    display["availableCategories"] = connector.available_categories
    return display


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------


class FormatResponseModel(BaseModel):
    question: Dict[str, Any]
    response: Optional[Dict[str, Any]] = None


@app.post("/api/assessments/format-response", tags=["assessments"])
def format_assessment_response(payload: FormatResponseModel, user: User = Depends(get_current_user)):
    result = assessment_response.format_response_display(payload.question, payload.response)
    return result.as_dict()


@app.post("/api/assessments/templates", tags=["assessments"], status_code=201)
def create_assessment_template(
    payload: assessments.AssessmentTemplateModel,
    user: User = Depends(require_roles("supervisor")),
    session: Session = Depends(get_session),
):
    template = assessments.create_template(session, payload, created_by_id=user.id)
    return {
        "id": template.id,
        "name": template.name,
        "sections": [
            {"id": section.id, "title": section.title, "questions": len(section.questions)}
            for section in template.sections
        ],
    }


@app.post("/api/assessments/assignments/{assignment_id}/recalculate", tags=["assessments"])
def recalculate_assignment_scores(
    assignment_id: int,
    user: User = Depends(require_roles("supervisor", "therapist")),
    session: Session = Depends(get_session),
):
    try:
        sections = assessments.recalculate_assessment_scores(session, assignment_id)
    except assessments.AssessmentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"Assessment assignment {assignment_id} not found") from exc
    total = sum(section["score"] or 0 for section in sections if section["isScoring"])
    return {"assignmentId": assignment_id, "totalScore": total, "sections": sections}


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

_ADMIN_ROLES = ("supervisor",)


class PreferenceModel(BaseModel):
    inAppEnabled: Optional[bool] = None
    emailEnabled: Optional[bool] = None


class TriggerModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: Optional[str] = None
    eventType: str
    entityType: str
    conditionRules: Optional[str] = "{}"
    recipientRules: Optional[str] = None
    templateId: Optional[int] = None
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    delayMinutes: int = Field(0, ge=0)
    expiryDays: Optional[int] = Field(None, ge=1)
    isActive: bool = True

    @field_validator("name", "description")
    @classmethod
    def clean_text(cls, v: Optional[str]) -> Optional[str]:  # noqa: N805
        return sanitize_text(v).strip() if v else v

    @field_validator("conditionRules")
    @classmethod
    def validate_conditions(cls, v: Optional[str]) -> Optional[str]:  # noqa: N805
        try:
            parse_conditions(v)
        except InvalidConditionError as exc:
            raise ValueError(str(exc)) from exc
        return v


class TriggerUpdateModel(TriggerModel):
    name: Optional[str] = None
    eventType: Optional[str] = None
    entityType: Optional[str] = None
    priority: Optional[Literal["low", "medium", "high", "urgent"]] = None
    delayMinutes: Optional[int] = Field(None, ge=0)
    isActive: Optional[bool] = None


class NotificationTemplateModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    type: str
    subject: str
    bodyTemplate: str
    actionUrlTemplate: Optional[str] = None
    actionLabel: Optional[str] = None
    isActive: bool = True

    @field_validator("name", "subject", "bodyTemplate", "actionLabel")
    @classmethod
    def clean_text(cls, v: Optional[str]) -> Optional[str]:  # noqa: N805
        return sanitize_text(v).strip() if v else v


class NotificationTemplateUpdateModel(NotificationTemplateModel):
    name: Optional[str] = None
    type: Optional[str] = None
    subject: Optional[str] = None
    bodyTemplate: Optional[str] = None
    isActive: Optional[bool] = None


class TestEventModel(BaseModel):
    eventType: str
    entityData: Dict[str, Any]


def _not_found(exc: NotificationNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


@app.get("/api/notifications", tags=["notifications"])
def list_notifications(
    limit: int = Query(NOTIFICATION_HISTORY_LIMIT, ge=1, le=500),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    service = NotificationService(session, history_limit=NOTIFICATION_HISTORY_LIMIT)
    return [serialise_notification(row) for row in service.list_for_user(user.id, limit)]


@app.get("/api/notifications/unread-count", tags=["notifications"])
def unread_notification_count(
    user: User = Depends(get_current_user), session: Session = Depends(get_session)
):
    return {"count": NotificationService(session).unread_count(user.id)}


@app.put("/api/notifications/mark-all-read", tags=["notifications"])
def mark_all_notifications_read(
    user: User = Depends(get_current_user), session: Session = Depends(get_session)
):
    updated = NotificationService(session).mark_all_as_read(user.id)
    return _success_payload(updated=updated)


@app.put("/api/notifications/{notification_id}/read", tags=["notifications"])
def mark_notification_read(
    notification_id: int,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        row = NotificationService(session).mark_as_read(notification_id, user.id)
    except NotificationNotFoundError as exc:
        raise _not_found(exc) from exc
    return serialise_notification(row)


@app.delete("/api/notifications/{notification_id}", tags=["notifications"])
def delete_notification(
    notification_id: int,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        NotificationService(session).delete(notification_id, user.id)
    except NotificationNotFoundError as exc:
        raise _not_found(exc) from exc
    return _success_payload()


@app.get("/api/notifications/preferences", tags=["notifications"])
def get_notification_preferences(
    user: User = Depends(get_current_user), session: Session = Depends(get_session)
):
    return [serialise_preference(row) for row in NotificationService(session).get_preferences(user.id)]


@app.put("/api/notifications/preferences/{trigger_type}", tags=["notifications"])
def set_notification_preference(
    trigger_type: str,
    payload: PreferenceModel,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = NotificationService(session).set_preference(
        user.id,
        trigger_type,
        in_app_enabled=payload.inAppEnabled,
        email_enabled=payload.emailEnabled,
    )
    return serialise_preference(row)


@app.get("/api/notifications/triggers", tags=["notifications"])
def list_notification_triggers(
    event_type: Optional[str] = Query(None, alias="eventType"),
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
    session: Session = Depends(get_session),
):
    return [serialise_trigger(row) for row in NotificationService(session).list_triggers(event_type)]


@app.post("/api/notifications/triggers", tags=["notifications"], status_code=201)
def create_notification_trigger(
    payload: TriggerModel,
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
    session: Session = Depends(get_session),
):
    row = NotificationService(session).create_trigger(payload.model_dump())
    return serialise_trigger(row)


@app.put("/api/notifications/triggers/{trigger_id}", tags=["notifications"])
def update_notification_trigger(
    trigger_id: int,
    payload: TriggerUpdateModel,
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
    session: Session = Depends(get_session),
):
    try:
        row = NotificationService(session).update_trigger(
            trigger_id, payload.model_dump(exclude_unset=True)
        )
    except NotificationNotFoundError as exc:
        raise _not_found(exc) from exc
    return serialise_trigger(row)


@app.delete("/api/notifications/triggers/{trigger_id}", tags=["notifications"])
def delete_notification_trigger(
    trigger_id: int,
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
    session: Session = Depends(get_session),
):
    try:
        NotificationService(session).delete_trigger(trigger_id)
    except NotificationNotFoundError as exc:
        raise _not_found(exc) from exc
    return _success_payload()


@app.get("/api/notifications/templates", tags=["notifications"])
def list_notification_templates(
    template_type: Optional[str] = Query(None, alias="type"),
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
    session: Session = Depends(get_session),
):
    return [serialise_template(row) for row in NotificationService(session).list_templates(template_type)]


@app.post("/api/notifications/templates", tags=["notifications"], status_code=201)
def create_notification_template(
    payload: NotificationTemplateModel,
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
    session: Session = Depends(get_session),
):
    row = NotificationService(session).create_template(payload.model_dump())
    return serialise_template(row)


@app.put("/api/notifications/templates/{template_id}", tags=["notifications"])
def update_notification_template(
    template_id: int,
    payload: NotificationTemplateUpdateModel,
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
    session: Session = Depends(get_session),
):
    try:
        row = NotificationService(session).update_template(
            template_id, payload.model_dump(exclude_unset=True)
        )
    except NotificationNotFoundError as exc:
        raise _not_found(exc) from exc
    return serialise_template(row)


@app.delete("/api/notifications/templates/{template_id}", tags=["notifications"])
def delete_notification_template(
    template_id: int,
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
    session: Session = Depends(get_session),
):
    try:
        NotificationService(session).delete_template(template_id)
    except NotificationNotFoundError as exc:
        raise _not_found(exc) from exc
    return _success_payload()


@app.post("/api/notifications/test-event", tags=["notifications"])
def process_test_event(
    payload: TestEventModel,
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
    session: Session = Depends(get_session),
):
    created = NotificationService(session).process_event(payload.eventType, payload.entityData)
    return _success_payload(message="Event processed", created=len(created))


@app.get("/api/notifications/stats", tags=["notifications"])
def notification_stats(
    user: User = Depends(require_roles(*_ADMIN_ROLES)), session: Session = Depends(get_session)
):
    return NotificationService(session).stats()


@app.post("/api/notifications/cleanup", tags=["notifications"])
def cleanup_notifications(
    user: User = Depends(require_roles(*_ADMIN_ROLES)), session: Session = Depends(get_session)
):
    removed = NotificationService(session).cleanup_expired()
    return _success_payload(message="Expired notifications cleaned up", removed=removed)


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------


class AutofillModel(BaseModel):
    template: str
    client: Dict[str, Any] = Field(default_factory=dict)
    therapist: Dict[str, Any] = Field(default_factory=dict)
    practice: Dict[str, Any] = Field(default_factory=dict)
    escapeHtml: bool = True


def _escape_html(value: str) -> str:
    return html.escape(value, quote=True)


@app.get("/api/forms/autofill/variables", tags=["forms"])
def autofill_variables(user: User = Depends(get_current_user)):
    return autofill.available_autofill_variables()


@app.post("/api/forms/autofill", tags=["forms"])
def autofill_form(payload: AutofillModel, user: User = Depends(get_current_user)):
    values = autofill.build_autofill_map(
        {"client": payload.client, "therapist": payload.therapist, "practice": payload.practice}
    )
    content = autofill.replace_autofill_variables(
        payload.template, values, escape=_escape_html if payload.escapeHtml else None
    )
    return {"content": content, "variables": values}
