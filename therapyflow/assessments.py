"""Assessment templates and score calculation."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from therapyflow.assessment_response import format_response_display
from therapyflow.db.models import (
    AssessmentAssignment,
    AssessmentQuestion,
    AssessmentQuestionOption,
    AssessmentResponse,
    AssessmentSection,
    AssessmentTemplate,
)
from therapyflow.sanitizer import sanitize_text
from therapyflow.time_utils import utc_now

logger = structlog.get_logger(__name__)

QUESTION_TYPES = {"text", "rating", "radio", "checkbox"}


class AssessmentNotFoundError(Exception):
    """Raised when an assessment assignment or template does not exist."""


# ---------------------------------------------------------------------------
# Template payloads
# ---------------------------------------------------------------------------


class AssessmentOptionModel(BaseModel):
    optionText: str
    optionValue: Optional[float] = None
    sortOrder: Optional[int] = None

    @field_validator("optionText")
    @classmethod
    def clean_text(cls, v: str) -> str:  # noqa: N805
        cleaned = sanitize_text(v).strip()
        if not cleaned:
            raise ValueError("option text is required")
        return cleaned


class AssessmentQuestionModel(BaseModel):
    questionText: str
    questionType: str = "text"
    options: List[str] = Field(default_factory=list)
    allOptions: List[AssessmentOptionModel] = Field(default_factory=list)
    ratingMin: Optional[int] = None
    ratingMax: Optional[int] = None
    ratingLabels: List[str] = Field(default_factory=list)
    sortOrder: int = 0

    @field_validator("questionText")
    @classmethod
    def clean_question(cls, v: str) -> str:  # noqa: N805
        cleaned = sanitize_text(v).strip()
        if not cleaned:
            raise ValueError("question text is required")
        return cleaned

    @field_validator("questionType")
    @classmethod
    def validate_type(cls, v: str) -> str:  # noqa: N805
        if v not in QUESTION_TYPES:
            raise ValueError("invalid question type")
        return v

    @field_validator("options", "ratingLabels", mode="before")
    @classmethod
    def clean_strings(cls, v):  # type: ignore[override]
        if not v:
            return []
        return [sanitize_text(str(item)).strip() for item in v]


class AssessmentSectionModel(BaseModel):
    title: str
    description: Optional[str] = None
    isScoring: bool = False
    sortOrder: int = 0
    questions: List[AssessmentQuestionModel] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def clean_title(cls, v: str) -> str:  # noqa: N805
        cleaned = sanitize_text(v).strip()
        if not cleaned:
            raise ValueError("section title is required")
        return cleaned

    @field_validator("description")
    @classmethod
    def clean_description(cls, v: Optional[str]) -> Optional[str]:  # noqa: N805
        return sanitize_text(v).strip() if v else v


class AssessmentTemplateModel(BaseModel):
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    sections: List[AssessmentSectionModel] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def clean_name(cls, v: str) -> str:  # noqa: N805
        cleaned = sanitize_text(v).strip()
        if not cleaned:
            raise ValueError("template name is required")
        return cleaned

    @field_validator("description", "category")
    @classmethod
    def clean_optional(cls, v: Optional[str]) -> Optional[str]:  # noqa: N805
        return sanitize_text(v).strip() if v else v


def create_template(
    session: Session, payload: AssessmentTemplateModel, created_by_id: Optional[int] = None
) -> AssessmentTemplate:
    """Persist *payload* as a template with its sections, questions and options."""

    template = AssessmentTemplate(
        name=payload.name,
        description=payload.description,
        category=payload.category,
        created_by_id=created_by_id,
    )
    for section_in in payload.sections:
        section = AssessmentSection(
            title=section_in.title,
            description=section_in.description,
            is_scoring=section_in.isScoring,
            sort_order=section_in.sortOrder,
        )
        for question_in in section_in.questions:
            question = AssessmentQuestion(
                question_text=question_in.questionText,
                question_type=question_in.questionType,
                options=question_in.options or None,
                rating_min=question_in.ratingMin,
                rating_max=question_in.ratingMax,
                rating_labels=question_in.ratingLabels or None,
                sort_order=question_in.sortOrder,
            )
            for position, option_in in enumerate(question_in.allOptions):
                question.option_rows.append(
                    AssessmentQuestionOption(
                        option_text=option_in.optionText,
                        option_value=option_in.optionValue,
                        sort_order=position if option_in.sortOrder is None else option_in.sortOrder,
                    )
                )
            section.questions.append(question)
        template.sections.append(section)
    session.add(template)
    session.flush()
    logger.info("assessment_template_created", template_id=template.id, sections=len(template.sections))
    return template


def question_payload(question: AssessmentQuestion) -> Dict[str, Any]:
    """Return *question* in the API format used for response formatting."""

    return {
        "id": question.id,
        "questionText": question.question_text,
        "questionType": question.question_type,
        "options": list(question.options or []),
        "allOptions": [
            {"id": option.id, "optionText": option.option_text, "optionValue": option.option_value}
            for option in question.option_rows
        ],
        "ratingMin": question.rating_min,
        "ratingMax": question.rating_max,
        "ratingLabels": list(question.rating_labels or []) or None,
    }


def response_payload(response: AssessmentResponse) -> Dict[str, Any]:
    return {
        "textResponse": response.text_response,
        "ratingValue": response.rating_value,
        "selectedOptions": response.selected_options,
    }


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def _selected_option(
    options: List[AssessmentQuestionOption], raw: Any
) -> Optional[AssessmentQuestionOption]:
    try:
        selected = int(raw)
    except (TypeError, ValueError):
        return None
    for option in options:
        if option.id == selected:
            return option
    if 0 <= selected < len(options):
        return options[selected]
    return None


def score_response(question: AssessmentQuestion, response: AssessmentResponse) -> Optional[float]:
    """Return the score contributed by *response*, or ``None`` when unscored.

    Selections resolve to option rows by id first and then by position in
    ``sort_order``.  Checkbox questions sum every resolved selection; other
    choice questions use the first one.
    """

    if question.question_type == "rating":
        return float(response.rating_value) if response.rating_value is not None else None

    selections = response.selected_options or []
    if not selections:
        return None

    options = sorted(question.option_rows, key=lambda option: (option.sort_order, option.id or 0))
    if question.question_type != "checkbox":
        selections = selections[:1]

    values = []
    for raw in selections:
        option = _selected_option(options, raw)
        if option is not None and option.option_value is not None:
            values.append(float(option.option_value))
    if not values:
        return None
    return sum(values)


def recalculate_assessment_scores(session: Session, assignment_id: int) -> List[Dict[str, Any]]:
    """Recompute response and total scores for an assignment.

    Returns one summary per section in template order.
    """

    assignment = session.get(AssessmentAssignment, assignment_id)
    if assignment is None:
        raise AssessmentNotFoundError(assignment_id)

    responses = {
        response.question_id: response
        for response in session.execute(
            select(AssessmentResponse).where(AssessmentResponse.assignment_id == assignment_id)
        ).scalars()
    }

    total = 0.0
    summaries: List[Dict[str, Any]] = []
    for section in assignment.template.sections:
        section_score = 0.0
        answered: List[Dict[str, Any]] = []
        for question in section.questions:
            response = responses.get(question.id)
            if response is None:
                continue
            response.score_value = score_response(question, response)
            if response.score_value is not None:
                section_score += response.score_value
            display = format_response_display(question_payload(question), response_payload(response))
            answered.append(
                {
                    "questionId": question.id,
                    "questionText": question.question_text,
                    "score": response.score_value,
                    "display": display.as_dict(),
                }
            )
        if section.is_scoring:
            total += section_score
        summaries.append(
            {
                "sectionId": section.id,
                "title": section.title,
                "isScoring": bool(section.is_scoring),
                "score": section_score if section.is_scoring else None,
                "answered": len(answered),
                "total": len(section.questions),
                "responses": answered,
            }
        )

    assignment.total_score = total
    if assignment.completed_at is None and assignment.status == "completed":
        assignment.completed_at = utc_now()
    session.flush()
    logger.info(
        "assessment_scores_recalculated",
        assignment_id=assignment_id,
        total_score=total,
        responses=len(responses),
    )
    return summaries


__all__ = [
    "AssessmentNotFoundError",
    "AssessmentOptionModel",
    "AssessmentQuestionModel",
    "AssessmentSectionModel",
    "AssessmentTemplateModel",
    "create_template",
    "question_payload",
    "response_payload",
    "score_response",
    "recalculate_assessment_scores",
]
