"""
Data Models
===========
Pydantic models for the canonical quiz document and the taxonomy entities.

Stored documents keep the historical camelCase field names used in MongoDB
(``imageUrl``, ``isCorrect``, ``associatedExamId`` ...). Python code works
with snake_case attributes; every model dumps back to camelCase through
``to_document()``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

MAX_OPTIONS = 5


# ─── Enums ────────────────────────────────────────────────────────────────────


class TestType(str, Enum):
    """Kind of quiz. Decides which association fields are meaningful."""
    PREVIOUS_YEAR = "Previous Year"
    MOCK = "Mock"
    PRACTICE = "Practice Test"


class QuizStatus(str, Enum):
    """Operator-controlled visibility of a quiz. Any transition is allowed."""
    DRAFT = "Draft"
    PUBLISHED = "Published"
    PRIVATE = "Private"


# ─── Quiz Aggregate ───────────────────────────────────────────────────────────


class _Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
    )

    def to_document(self) -> dict:
        """Dump to the stored (camelCase) shape, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


class Option(_Document):
    """One answer choice. Owned by its Question."""
    id: str = Field(min_length=1)
    text: str = ""
    image_url: Optional[str] = None
    image_public_id: Optional[str] = None
    is_correct: bool = False
    ai_tags: list[str] = Field(default_factory=list)

    @property
    def has_image(self) -> bool:
        return bool(self.image_url)


class Question(_Document):
    """A scored multiple-choice question. Owned by its Section."""
    id: str = Field(min_length=1)
    text: str = ""
    image_url: Optional[str] = None
    image_public_id: Optional[str] = None
    marks: float = Field(default=1.0, gt=0)
    negative_marks: float = Field(default=0.0, ge=0)
    options: list[Option] = Field(min_length=1, max_length=MAX_OPTIONS)
    explanation: Optional[str] = None
    ai_tags: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_options(self) -> "Question":
        if not any(o.is_correct for o in self.options):
            raise ValueError("at least one option must be marked correct")
        if not any(o.text.strip() or o.has_image for o in self.options):
            raise ValueError("at least one option needs text or an image")
        ids = [o.id for o in self.options]
        if len(set(ids)) != len(ids):
            raise ValueError("option ids must be unique within a question")
        return self


class Section(_Document):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    question_limit: Optional[int] = Field(default=None, ge=0)
    timer_minutes: Optional[float] = Field(default=None, ge=0)
    questions: list[Question] = Field(min_length=1)


class Quiz(_Document):
    """
    Root aggregate. Sections, questions and options have no identity
    outside of it and are only ever written as part of the whole quiz.
    """
    id: Optional[str] = Field(default=None, alias="_id")
    title: str = Field(min_length=1)
    test_type: TestType
    class_id: Optional[str] = None
    subject_id: Optional[str] = None
    chapter_id: Optional[str] = None
    associated_exam_id: Optional[str] = None
    # free-text labels written by the original upload form
    class_type: Optional[str] = None
    subject: Optional[str] = None
    chapter: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    overall_timer_minutes: Optional[float] = Field(default=None, ge=0)
    sections: list[Section] = Field(min_length=1)
    status: QuizStatus = Field(default=QuizStatus.DRAFT, validate_default=True)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def question_count(self) -> int:
        return sum(len(s.questions) for s in self.sections)


# ─── Taxonomy ─────────────────────────────────────────────────────────────────


class TaxonomyItem(_Document):
    """
    Exam, chapter, class or subject. The back-reference arrays are a
    convenience index derived from quizzes, never authoritative.
    """
    id: Optional[str] = Field(default=None, alias="_id")
    name: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    quiz_ids: Optional[list[str]] = None
    associated_subject_ids: Optional[list[str]] = None
    associated_chapter_ids: Optional[list[str]] = None


# ─── Helpers ──────────────────────────────────────────────────────────────────


def new_object_id() -> str:
    """Fresh 24-hex identifier, same format MongoDB uses for ``_id``."""
    return str(ObjectId())


def to_jsonable(value: Any) -> Any:
    """Convert datetimes and ObjectIds in a stored document for JSON output."""
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, ObjectId):
        return str(value)
    return value
