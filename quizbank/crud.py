"""
Taxonomy CRUD Service Layer
===========================
Create/rename/delete/list for the four named collections that quizzes are
filed under: exams, chapters, classes and subjects.

Names are stored trimmed and upper-cased and are unique per collection
(pre-check here, unique index in the database). Deleting an item does not
touch quizzes: a quiz's association field stays authoritative and dangling
references are reported by ``quizbank reconcile``.
"""

from __future__ import annotations

import logging
from typing import Optional

from .database import CHAPTERS, CLASSES, EXAMS, SUBJECTS, Database
from .errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# collection → (label, backlink field, quiz field pointing at the item)
TAXONOMY = {
    EXAMS: ("Exam", "quizIds", "associatedExamId"),
    CHAPTERS: ("Chapter", "quizIds", "chapterId"),
    CLASSES: ("Class", "associatedSubjectIds", "classId"),
    SUBJECTS: ("Subject", "associatedChapterIds", "subjectId"),
}


def normalize_name(value) -> str:
    """Trim and upper-case a taxonomy name. Empty names are rejected."""
    name = value.strip().upper() if isinstance(value, str) else ""
    if not name:
        raise ValidationError("Name is required and must be a non-empty string.")
    return name


class TaxonomyService:
    """CRUD for one taxonomy collection."""

    def __init__(self, db: Database, collection: str):
        if collection not in TAXONOMY:
            raise ValueError(f"Unknown taxonomy collection: {collection!r}")
        self.db = db
        self.collection = collection
        self.label, self.backlink_field, self.quiz_field = TAXONOMY[collection]

    def create(self, name) -> dict:
        name = normalize_name(name)
        self._ensure_unique(name)
        item_id = self.db.insert_named(
            self.collection, name, **{self.backlink_field: []}
        )
        logger.info(f"{self.label} created: {name} ({item_id})")
        return self.get(item_id)

    def rename(self, item_id: str, name) -> dict:
        name = normalize_name(name)
        self.get(item_id)
        self._ensure_unique(name, exclude_id=item_id)
        if not self.db.rename(self.collection, item_id, name, self.label):
            raise NotFoundError(f"{self.label} not found.")
        logger.info(f"{self.label} {item_id} renamed to {name}")
        return self.get(item_id)

    def associate_quiz(self, item_id: str, quiz_id) -> bool:
        """
        Add a quiz id to the item's ``quizIds`` backlink.

        Returns False when the quiz was already listed. The quiz document is
        not touched; a full ``reconcile`` drops links no quiz confirms.
        """
        if self.backlink_field != "quizIds":
            raise ValidationError(f"Quizzes cannot be associated with a {self.label.lower()}.")
        if not isinstance(quiz_id, str) or not quiz_id.strip():
            raise ValidationError("Quiz ID is required and must be a string.")
        quiz_id = quiz_id.strip()
        before = self.get(item_id)[self.backlink_field]
        if not self.db.add_to_set(self.collection, item_id, self.backlink_field, quiz_id):
            raise NotFoundError(f"{self.label} not found.")
        added = quiz_id not in before
        logger.info(
            f"Quiz {quiz_id} {'associated with' if added else 'already on'} "
            f"{self.label.lower()} {item_id}"
        )
        return added

    def delete(self, item_id: str):
        if not self.db.delete_named(self.collection, item_id, self.label):
            raise NotFoundError(f"{self.label} not found.")
        referencing = self.db.count_quizzes({self.quiz_field: item_id})
        if referencing:
            logger.warning(
                f"{self.label} {item_id} deleted while {referencing} quiz(zes) "
                f"still reference it"
            )
        else:
            logger.info(f"{self.label} {item_id} deleted")

    def get(self, item_id: str) -> dict:
        item = self.db.get_named(self.collection, item_id, self.label)
        if item is None:
            raise NotFoundError(f"{self.label} not found.")
        item.setdefault(self.backlink_field, [])
        return item

    def list(self) -> list[dict]:
        """All items sorted by name; backlink arrays default to []."""
        items = self.db.list_named(self.collection)
        for item in items:
            item.setdefault(self.backlink_field, [])
        return items

    def _ensure_unique(self, name: str, exclude_id: Optional[str] = None):
        if self.db.find_by_name(self.collection, name, exclude_id=exclude_id):
            raise ConflictError(f"{self.label} with this name already exists.")
