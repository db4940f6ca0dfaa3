"""SQLAlchemy models for the practice management schema."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def _utcnow() -> datetime:
    """Return an aware UTC timestamp for ORM defaults."""

    return datetime.now(timezone.utc)


class ClientStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class ClientStage(str, enum.Enum):
    INTAKE = "intake"
    ASSESSMENT = "assessment"
    PSYCHOTHERAPY = "psychotherapy"


class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class TaskPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class User(Base):
    __tablename__ = "users"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    username = sa.Column(String, nullable=False, unique=True, index=True)
    full_name = sa.Column(String, nullable=False)
    email = sa.Column(String, nullable=True, unique=True)
    phone = sa.Column(String, nullable=True)
    role = sa.Column(String, nullable=False, server_default="therapist", default="therapist")
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class SupervisorAssignment(Base):
    __tablename__ = "supervisor_assignments"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    supervisor_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    therapist_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (sa.Index("idx_supervisor_assignments_therapist", "therapist_id", "is_active"),)


class Room(Base):
    __tablename__ = "rooms"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=False, unique=True)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)


class Client(Base):
    __tablename__ = "clients"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    client_id = sa.Column(String(20), nullable=False, unique=True)
    full_name = sa.Column(String, nullable=False)
    date_of_birth = sa.Column(Date, nullable=True)
    phone = sa.Column(String(20), nullable=True)
    email = sa.Column(String, nullable=True)
    gender = sa.Column(String, nullable=True)
    status = sa.Column(String, nullable=False, server_default=ClientStatus.PENDING.value, default=ClientStatus.PENDING.value)
    stage = sa.Column(String, nullable=False, server_default=ClientStage.INTAKE.value, default=ClientStage.INTAKE.value)
    client_type = sa.Column(String, nullable=False, server_default="individual", default="individual")
    assigned_therapist_id = sa.Column(Integer, ForeignKey("users.id"), nullable=True)
    has_portal_access = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    portal_email = sa.Column(String, nullable=True)
    is_duplicate = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    duplicate_of_id = sa.Column(Integer, ForeignKey("clients.id"), nullable=True)
    last_session_date = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    assigned_therapist = relationship("User", foreign_keys=[assigned_therapist_id])

    __table_args__ = (
        sa.Index("clients_name_idx", "full_name"),
        sa.Index("clients_email_idx", "email"),
        sa.Index("clients_phone_idx", "phone"),
        sa.Index("clients_status_idx", "status"),
        sa.Index("clients_therapist_idx", "assigned_therapist_id"),
        sa.Index("clients_created_at_idx", "created_at"),
    )


class TherapySession(Base):
    __tablename__ = "sessions"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    client_id = sa.Column(Integer, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    therapist_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    room_id = sa.Column(Integer, ForeignKey("rooms.id"), nullable=True)
    session_date = sa.Column(DateTime(timezone=True), nullable=False)
    session_type = sa.Column(String, nullable=False)
    status = sa.Column(String, nullable=False, server_default=SessionStatus.SCHEDULED.value, default=SessionStatus.SCHEDULED.value)
    duration = sa.Column(Integer, nullable=True)
    notes = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    client = relationship("Client")
    therapist = relationship("User")
    room = relationship("Room")

    __table_args__ = (
        sa.Index("idx_sessions_therapist_date", "therapist_id", "session_date"),
        sa.Index("idx_sessions_room_date", "room_id", "session_date"),
    )


class Task(Base):
    __tablename__ = "tasks"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    client_id = sa.Column(Integer, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    assigned_to_id = sa.Column(Integer, ForeignKey("users.id"), nullable=True)
    title = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=True)
    status = sa.Column(String, nullable=False, server_default=TaskStatus.PENDING.value, default=TaskStatus.PENDING.value)
    priority = sa.Column(String, nullable=False, server_default=TaskPriority.MEDIUM.value, default=TaskPriority.MEDIUM.value)
    due_date = sa.Column(DateTime(timezone=True), nullable=True)
    completed_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )


class LibraryCategory(Base):
    __tablename__ = "library_categories"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=True)
    parent_id = sa.Column(Integer, ForeignKey("library_categories.id"), nullable=True)
    sort_order = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)


class LibraryEntry(Base):
    __tablename__ = "library_entries"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    category_id = sa.Column(Integer, ForeignKey("library_categories.id"), nullable=False)
    title = sa.Column(String, nullable=False)
    content = sa.Column(Text, nullable=False)
    tags = sa.Column(sa.JSON, nullable=True)
    usage_count = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_by_id = sa.Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    category = relationship("LibraryCategory")
    created_by = relationship("User")

    __table_args__ = (sa.Index("idx_library_entries_category", "category_id"),)


class LibraryEntryConnection(Base):
    __tablename__ = "library_entry_connections"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    from_entry_id = sa.Column(Integer, ForeignKey("library_entries.id", ondelete="CASCADE"), nullable=False)
    to_entry_id = sa.Column(Integer, ForeignKey("library_entries.id", ondelete="CASCADE"), nullable=False)
    connection_type = sa.Column(String, nullable=False, server_default="related", default="related")
    strength = sa.Column(Integer, nullable=False, server_default=sa.text("1"), default=1)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_by_id = sa.Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        sa.Index("idx_library_connections_from", "from_entry_id"),
        sa.Index("idx_library_connections_to", "to_entry_id"),
    )


class AssessmentTemplate(Base):
    __tablename__ = "assessment_templates"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=True)
    category = sa.Column(String, nullable=True)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_by_id = sa.Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    sections = relationship(
        "AssessmentSection",
        order_by="AssessmentSection.sort_order",
        cascade="all, delete-orphan",
    )


class AssessmentSection(Base):
    __tablename__ = "assessment_sections"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    template_id = sa.Column(Integer, ForeignKey("assessment_templates.id", ondelete="CASCADE"), nullable=False)
    title = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=True)
    is_scoring = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    sort_order = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)

    questions = relationship(
        "AssessmentQuestion",
        order_by="AssessmentQuestion.sort_order",
        cascade="all, delete-orphan",
    )


class AssessmentQuestion(Base):
    __tablename__ = "assessment_questions"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    section_id = sa.Column(Integer, ForeignKey("assessment_sections.id", ondelete="CASCADE"), nullable=False)
    question_text = sa.Column(Text, nullable=False)
    question_type = sa.Column(String, nullable=False, server_default="text", default="text")
    options = sa.Column(sa.JSON, nullable=True)
    rating_min = sa.Column(Integer, nullable=True)
    rating_max = sa.Column(Integer, nullable=True)
    rating_labels = sa.Column(sa.JSON, nullable=True)
    sort_order = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)

    option_rows = relationship(
        "AssessmentQuestionOption",
        order_by="AssessmentQuestionOption.sort_order",
        cascade="all, delete-orphan",
    )


class AssessmentQuestionOption(Base):
    __tablename__ = "assessment_question_options"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    question_id = sa.Column(Integer, ForeignKey("assessment_questions.id", ondelete="CASCADE"), nullable=False)
    option_text = sa.Column(Text, nullable=False)
    option_value = sa.Column(Float, nullable=True)
    sort_order = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)


class AssessmentAssignment(Base):
    __tablename__ = "assessment_assignments"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    template_id = sa.Column(Integer, ForeignKey("assessment_templates.id"), nullable=False)
    client_id = sa.Column(Integer, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    assigned_by_id = sa.Column(Integer, ForeignKey("users.id"), nullable=True)
    status = sa.Column(String, nullable=False, server_default="pending", default="pending")
    total_score = sa.Column(Float, nullable=True)
    completed_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    template = relationship("AssessmentTemplate")
    responses = relationship("AssessmentResponse", cascade="all, delete-orphan")


class AssessmentResponse(Base):
    __tablename__ = "assessment_responses"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    assignment_id = sa.Column(Integer, ForeignKey("assessment_assignments.id", ondelete="CASCADE"), nullable=False)
    question_id = sa.Column(Integer, ForeignKey("assessment_questions.id"), nullable=False)
    text_response = sa.Column(Text, nullable=True)
    rating_value = sa.Column(Integer, nullable=True)
    selected_options = sa.Column(sa.JSON, nullable=True)
    score_value = sa.Column(Float, nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("assignment_id", "question_id", name="uq_assessment_response_question"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    user_id = sa.Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = sa.Column(String, nullable=False)
    title = sa.Column(String, nullable=False)
    message = sa.Column(Text, nullable=False)
    data = sa.Column(Text, nullable=True)
    priority = sa.Column(String, nullable=False, server_default="medium", default="medium")
    is_read = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    read_at = sa.Column(DateTime(timezone=True), nullable=True)
    action_url = sa.Column(String, nullable=True)
    action_label = sa.Column(String, nullable=True)
    grouping_key = sa.Column(String, nullable=True)
    related_entity_type = sa.Column(String, nullable=True)
    related_entity_id = sa.Column(Integer, nullable=True)
    expires_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (
        sa.Index("idx_notifications_user", "user_id", "created_at"),
        sa.Index("idx_notifications_unread", "user_id", "is_read"),
    )


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=False)
    type = sa.Column(String, nullable=False)
    subject = sa.Column(String, nullable=False)
    body_template = sa.Column(Text, nullable=False)
    action_url_template = sa.Column(String, nullable=True)
    action_label = sa.Column(String, nullable=True)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class NotificationTrigger(Base):
    __tablename__ = "notification_triggers"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=False, unique=True)
    description = sa.Column(Text, nullable=True)
    event_type = sa.Column(String, nullable=False)
    entity_type = sa.Column(String, nullable=False)
    condition_rules = sa.Column(Text, nullable=True)
    recipient_rules = sa.Column(Text, nullable=True)
    template_id = sa.Column(Integer, ForeignKey("notification_templates.id"), nullable=True)
    priority = sa.Column(String, nullable=False, server_default="medium", default="medium")
    delay_minutes = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    expiry_days = sa.Column(Integer, nullable=True)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (sa.Index("idx_notification_triggers_event", "event_type", "is_active"),)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    user_id = sa.Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    trigger_type = sa.Column(String, nullable=False)
    in_app_enabled = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    email_enabled = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        sa.UniqueConstraint("user_id", "trigger_type", name="uq_notification_preference"),
    )


__all__ = [
    "Base",
    "ClientStatus",
    "ClientStage",
    "SessionStatus",
    "TaskStatus",
    "TaskPriority",
    "User",
    "SupervisorAssignment",
    "Room",
    "Client",
    "TherapySession",
    "Task",
    "LibraryCategory",
    "LibraryEntry",
    "LibraryEntryConnection",
    "AssessmentTemplate",
    "AssessmentSection",
    "AssessmentQuestion",
    "AssessmentQuestionOption",
    "AssessmentAssignment",
    "AssessmentResponse",
    "Notification",
    "NotificationTemplate",
    "NotificationTrigger",
    "NotificationPreference",
]
