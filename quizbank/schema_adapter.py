"""
Schema Adapter
==============
Normalizes any stored or incoming quiz representation into the canonical
``Section → Question → Option`` shape.

Two historical shapes exist:
    - Legacy:    {title, testType, questions: [...]}
    - Sectioned: {title, testType, sections: [{name, questions: [...]}]}

A legacy question list is wrapped into a single synthetic section named
"Main Section". Missing ids are filled in, ``marks`` defaults to 1 and
``negativeMarks`` to 0, numeric strings are coerced to numbers.

Everything here is pure: no database, no object store.
"""

from __future__ import annotations

import hashlib
import logging
import math
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import Quiz, QuizStatus, TestType, new_object_id

logger = logging.getLogger(__name__)

LEGACY_SECTION_NAME = "Main Section"

ASSOCIATION_FIELDS = ("classId", "subjectId", "chapterId", "associatedExamId")
PRACTICE_ONLY_FIELDS = ("classId", "subjectId", "chapterId")
EXAM_ONLY_FIELDS = ("associatedExamId",)
LEGACY_LABEL_FIELDS = ("classType", "subject", "chapter")

_TEST_TYPE_ALIASES = {
    "previous year": TestType.PREVIOUS_YEAR,
    "previousyear": TestType.PREVIOUS_YEAR,
    "previous_year": TestType.PREVIOUS_YEAR,
    "mock": TestType.MOCK,
    "mock test": TestType.MOCK,
    "practice": TestType.PRACTICE,
    "practice test": TestType.PRACTICE,
    "practicetest": TestType.PRACTICE,
}

_INVALID_QUIZ = "Invalid quiz data provided."


# ─── Public API ───────────────────────────────────────────────────────────────


def normalize(raw: Any, id_seed: Optional[str] = None) -> Quiz:
    """
    Normalize a raw quiz document into a validated canonical Quiz.

    Missing ids are random unless ``id_seed`` is given (stored documents).

    Raises:
        ValidationError: if the shape cannot be repaired or any invariant
            (title, testType, >=1 section, positive marks, a correct option
            per question, option text-or-image) is violated.
    """
    if not isinstance(raw, dict):
        raise ValidationError(_INVALID_QUIZ, ["quiz payload must be a JSON object"])

    doc, issues = migrate_shape(raw, id_seed=id_seed)
    if issues:
        raise ValidationError(_INVALID_QUIZ, issues)

    try:
        return Quiz.model_validate(doc)
    except PydanticValidationError as exc:
        raise ValidationError(_INVALID_QUIZ, _describe(exc)) from exc


def adapt_for_read(document: dict) -> dict:
    """
    Lenient variant used on the read path.

    Stored documents are never rejected here: when a historical document
    violates a current invariant, the shape migration is still applied and
    the document is returned as-is otherwise. Generated ids are derived from
    the quiz ``_id`` so repeated reads of a legacy document agree.
    """
    seed = str(document["_id"]) if document.get("_id") is not None else None
    doc, issues = migrate_shape(document, id_seed=seed)
    if issues:
        logger.warning(f"Stored quiz {seed} has issues: {'; '.join(issues)}")
        return doc
    try:
        return Quiz.model_validate(doc).to_document()
    except PydanticValidationError as exc:
        logger.warning(
            f"Stored quiz {seed} fails validation: {'; '.join(_describe(exc))}"
        )
        return doc


def resolve_status(value: Any) -> QuizStatus:
    """Parse an operator-supplied status value (case-insensitive)."""
    if isinstance(value, str):
        for status in QuizStatus:
            if status.value.lower() == value.strip().lower():
                return status
    allowed = ", ".join(s.value for s in QuizStatus)
    raise ValidationError(
        f"Invalid status {value!r}. Expected one of: {allowed}."
    )


def resolve_test_type(value: Any) -> Optional[TestType]:
    if not isinstance(value, str):
        return None
    return _TEST_TYPE_ALIASES.get(" ".join(value.strip().lower().split()))


# ─── Shape Migration ──────────────────────────────────────────────────────────


def migrate_shape(
    raw: dict, id_seed: Optional[str] = None
) -> tuple[dict, list[str]]:
    """
    Map a legacy-or-canonical document onto the canonical shape.

    Never raises on bad values; problems are collected into the returned
    issue list so callers decide whether to reject (write path) or tolerate
    (read path).
    """
    issues: list[str] = []
    ids = _IdSource(id_seed)
    doc: dict = {}

    if raw.get("_id") is not None:
        doc["_id"] = str(raw["_id"])

    doc["title"] = _clean_str(raw.get("title"))
    if not doc["title"]:
        issues.append("title is required")

    test_type = resolve_test_type(raw.get("testType"))
    if test_type is None:
        allowed = ", ".join(t.value for t in TestType)
        issues.append(
            f"testType {raw.get('testType')!r} is not one of: {allowed}"
        )
        doc["testType"] = raw.get("testType")
    else:
        doc["testType"] = test_type.value

    for field in ASSOCIATION_FIELDS:
        value = _clean_str(raw.get(field))
        if value:
            doc[field] = value
    _drop_irrelevant_associations(doc, test_type)
    for field in LEGACY_LABEL_FIELDS:
        value = _clean_str(raw.get(field))
        if value:
            doc[field] = value

    doc["tags"] = _clean_tags(raw.get("tags"))

    timer = raw.get("overallTimerMinutes", raw.get("timerMinutes"))
    timer = _coerce_number(timer, "overallTimerMinutes", issues)
    if timer is not None:
        doc["overallTimerMinutes"] = timer

    if raw.get("status") is not None:
        doc["status"] = raw["status"]
    for stamp in ("createdAt", "updatedAt"):
        if raw.get(stamp) is not None:
            doc[stamp] = raw[stamp]

    sections = raw.get("sections")
    questions = raw.get("questions")
    if isinstance(sections, list) and sections:
        doc["sections"] = [
            _shape_section(s, f"sections[{i}]", issues, ids)
            for i, s in enumerate(sections)
            if _is_object(s, f"sections[{i}]", issues)
        ]
    elif isinstance(questions, list) and questions:
        legacy = {"name": LEGACY_SECTION_NAME, "questions": questions}
        doc["sections"] = [_shape_section(legacy, "sections[0]", issues, ids)]
    else:
        doc["sections"] = []
        issues.append("quiz must contain at least one section with questions")

    return doc, issues


def _shape_section(raw: dict, path: str, issues: list[str], ids: "_IdSource") -> dict:
    section: dict = {"id": ids.get(raw.get("id"), path)}
    section["name"] = _clean_str(raw.get("name"))
    if not section["name"]:
        issues.append(f"{path}.name is required")

    limit = _coerce_int(raw.get("questionLimit"), f"{path}.questionLimit", issues)
    if limit is not None:
        section["questionLimit"] = limit
    timer = _coerce_number(
        raw.get("timerMinutes", raw.get("timer")), f"{path}.timerMinutes", issues
    )
    if timer is not None:
        section["timerMinutes"] = timer

    questions = raw.get("questions")
    if not isinstance(questions, list) or not questions:
        issues.append(f"{path} must contain at least one question")
        questions = []
    section["questions"] = [
        _shape_question(q, f"{path}.questions[{i}]", issues, ids)
        for i, q in enumerate(questions)
        if _is_object(q, f"{path}.questions[{i}]", issues)
    ]
    return section


def _shape_question(raw: dict, path: str, issues: list[str], ids: "_IdSource") -> dict:
    question: dict = {
        "id": ids.get(raw.get("id"), path),
        "text": _as_text(raw.get("text")),
    }
    _copy_image_fields(raw, question)

    marks = _coerce_number(raw.get("marks"), f"{path}.marks", issues, default=1.0)
    if isinstance(marks, float) and marks == 0:
        issues.append(f"{path}.marks must be greater than 0")
    question["marks"] = marks
    question["negativeMarks"] = _coerce_number(
        raw.get("negativeMarks"), f"{path}.negativeMarks", issues, default=0.0
    )

    options = raw.get("options")
    if not isinstance(options, list):
        issues.append(f"{path}.options must be a list")
        options = []
    question["options"] = [
        _shape_option(o, f"{path}.options[{i}]", ids)
        for i, o in enumerate(options)
        if _is_object(o, f"{path}.options[{i}]", issues)
    ]

    explanation = raw.get("explanation")
    if isinstance(explanation, str) and explanation.strip():
        question["explanation"] = explanation
    question["aiTags"] = _clean_tags(raw.get("aiTags"))
    return question


def _shape_option(raw: dict, path: str, ids: "_IdSource") -> dict:
    option: dict = {
        "id": ids.get(raw.get("id"), path),
        "text": _as_text(raw.get("text")),
    }
    _copy_image_fields(raw, option)
    option["isCorrect"] = _coerce_bool(raw.get("isCorrect"))
    option["aiTags"] = _clean_tags(raw.get("aiTags"))
    return option


# ─── Helpers ──────────────────────────────────────────────────────────────────


class _IdSource:
    """
    Fills missing ids. Random for incoming payloads; derived from a seed
    (the quiz id plus the entity's position) for stored documents.
    """

    def __init__(self, seed: Optional[str] = None):
        self.seed = seed

    def get(self, existing: Any, path: str) -> str:
        if existing is not None and str(existing).strip():
            return str(existing).strip()
        if self.seed is None:
            return new_object_id()
        digest = hashlib.sha1(f"{self.seed}/{path}".encode("utf-8"))
        return digest.hexdigest()[:24]


def _drop_irrelevant_associations(doc: dict, test_type: Optional[TestType]):
    """Practice tests link to class/subject/chapter, other types to an exam."""
    if test_type is None:
        return
    irrelevant = (
        EXAM_ONLY_FIELDS if test_type == TestType.PRACTICE else PRACTICE_ONLY_FIELDS
    )
    for field in irrelevant:
        doc.pop(field, None)


def _copy_image_fields(raw: dict, target: dict):
    url = raw.get("imageUrl")
    if isinstance(url, str) and url.strip():
        target["imageUrl"] = url.strip()
        public_id = raw.get("imagePublicId")
        if isinstance(public_id, str) and public_id.strip():
            target["imagePublicId"] = public_id.strip()


def _coerce_number(
    value: Any,
    label: str,
    issues: list[str],
    default: Optional[float] = None,
) -> Any:
    """JSON number or numeric string → float. Negative values are rejected."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        issues.append(f"{label} must be a number, got {value!r}")
        return value
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            issues.append(f"{label} must be a number, got {value!r}")
            return value
    else:
        issues.append(f"{label} must be a number, got {value!r}")
        return value

    if math.isnan(number) or math.isinf(number):
        issues.append(f"{label} must be a finite number")
        return value
    if number < 0:
        issues.append(f"{label} must not be negative")
    return number


def _coerce_int(value: Any, label: str, issues: list[str]) -> Any:
    number = _coerce_number(value, label, issues)
    if isinstance(number, float):
        if not number.is_integer():
            issues.append(f"{label} must be a whole number")
            return number
        return int(number)
    return number


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _clean_tags(value: Any) -> list[str]:
    """Accept a list of strings or a comma-separated string."""
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return []
    return [str(t).strip() for t in value if t is not None and str(t).strip()]


def _is_object(value: Any, path: str, issues: list[str]) -> bool:
    if isinstance(value, dict):
        return True
    issues.append(f"{path} must be an object")
    return False


def _describe(exc: PydanticValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        messages.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", ""))
    return messages
