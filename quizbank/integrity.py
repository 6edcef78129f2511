"""
Integrity Coordinator
=====================
Maintains the denormalized backlink arrays that point back at quizzes:

    exams.quizIds                 quiz ids associated with the exam
    chapters.quizIds              quiz ids filed under the chapter
    classes.associatedSubjectIds  subjects used together with the class
    subjects.associatedChapterIds chapters used together with the subject

The quiz's own ``associatedExamId`` / ``classId`` / ``subjectId`` /
``chapterId`` fields are the source of truth. Backlinks are an index: they
are updated only after the quiz write succeeded, every mutation is
add-if-absent or remove-if-present, and a failed mutation is logged and
reported as a warning instead of failing the quiz write.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional

from .database import CHAPTERS, CLASSES, EXAMS, SUBJECTS, Database
from .errors import QuizBankError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Associations:
    """The association fields of one quiz."""
    exam_id: Optional[str] = None
    chapter_id: Optional[str] = None
    class_id: Optional[str] = None
    subject_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Optional[dict]) -> "Associations":
        if not doc:
            return cls()
        return cls(
            exam_id=doc.get("associatedExamId") or None,
            chapter_id=doc.get("chapterId") or None,
            class_id=doc.get("classId") or None,
            subject_id=doc.get("subjectId") or None,
        )

    @property
    def class_subject(self) -> Optional[tuple[str, str]]:
        if self.class_id and self.subject_id:
            return self.class_id, self.subject_id
        return None

    @property
    def subject_chapter(self) -> Optional[tuple[str, str]]:
        if self.subject_id and self.chapter_id:
            return self.subject_id, self.chapter_id
        return None


class IntegrityCoordinator:
    """
    Applies backlink changes for quiz create/update/delete.

    Each ``on_*`` method returns the list of warnings for mutations that
    failed or hit a missing related document. An empty list means the pass
    fully reconciled.
    """

    def __init__(self, db: Database):
        self.db = db

    # ─── Lifecycle Hooks ──────────────────────────────────────────────────

    def on_create(self, quiz_id: str, assoc: Associations) -> list[str]:
        warnings: list[str] = []
        self._link(quiz_id, assoc, warnings)
        self._log_pass("create", quiz_id, warnings)
        return warnings

    def on_update(self, quiz_id: str, old: Associations, new: Associations) -> list[str]:
        """
        Remove stale links for fields that changed, then (re)add current ones.
        Re-adding unchanged links is a no-op that heals earlier failures.
        """
        warnings: list[str] = []

        if old.exam_id and old.exam_id != new.exam_id:
            self._mutate("remove", EXAMS, old.exam_id, "quizIds", quiz_id, warnings)
        if old.chapter_id and old.chapter_id != new.chapter_id:
            self._mutate("remove", CHAPTERS, old.chapter_id, "quizIds", quiz_id, warnings)
        if old.class_subject and old.class_subject != new.class_subject:
            self._unlink_pair(
                CLASSES, "associatedSubjectIds", old.class_subject,
                {"classId": old.class_id, "subjectId": old.subject_id},
                quiz_id, warnings,
            )
        if old.subject_chapter and old.subject_chapter != new.subject_chapter:
            self._unlink_pair(
                SUBJECTS, "associatedChapterIds", old.subject_chapter,
                {"subjectId": old.subject_id, "chapterId": old.chapter_id},
                quiz_id, warnings,
            )

        self._link(quiz_id, new, warnings)
        self._log_pass("update", quiz_id, warnings)
        return warnings

    def on_delete(self, quiz_id: str, assoc: Associations) -> list[str]:
        warnings: list[str] = []
        if assoc.exam_id:
            self._mutate("remove", EXAMS, assoc.exam_id, "quizIds", quiz_id, warnings)
        if assoc.chapter_id:
            self._mutate("remove", CHAPTERS, assoc.chapter_id, "quizIds", quiz_id, warnings)
        if assoc.class_subject:
            self._unlink_pair(
                CLASSES, "associatedSubjectIds", assoc.class_subject,
                {"classId": assoc.class_id, "subjectId": assoc.subject_id},
                quiz_id, warnings,
            )
        if assoc.subject_chapter:
            self._unlink_pair(
                SUBJECTS, "associatedChapterIds", assoc.subject_chapter,
                {"subjectId": assoc.subject_id, "chapterId": assoc.chapter_id},
                quiz_id, warnings,
            )
        self._log_pass("delete", quiz_id, warnings)
        return warnings

    # ─── Full Rebuild ─────────────────────────────────────────────────────

    def rebuild_all(self) -> dict:
        """
        Recompute every backlink array from the quizzes.

        Out-of-band repair for staleness left behind by failed passes.
        Returns counts per collection plus dangling quiz references (quizzes
        pointing at an exam/chapter/class/subject that no longer exists).
        """
        expected: dict[tuple[str, str], dict[str, set[str]]] = {
            (EXAMS, "quizIds"): defaultdict(set),
            (CHAPTERS, "quizIds"): defaultdict(set),
            (CLASSES, "associatedSubjectIds"): defaultdict(set),
            (SUBJECTS, "associatedChapterIds"): defaultdict(set),
        }
        projection = {"associatedExamId": 1, "chapterId": 1, "classId": 1, "subjectId": 1}
        for doc in self.db.all_quizzes(projection):
            quiz_id = str(doc["_id"])
            assoc = Associations.from_document(doc)
            if assoc.exam_id:
                expected[(EXAMS, "quizIds")][assoc.exam_id].add(quiz_id)
            if assoc.chapter_id:
                expected[(CHAPTERS, "quizIds")][assoc.chapter_id].add(quiz_id)
            if assoc.class_subject:
                expected[(CLASSES, "associatedSubjectIds")][assoc.class_id].add(assoc.subject_id)
            if assoc.subject_chapter:
                expected[(SUBJECTS, "associatedChapterIds")][assoc.subject_id].add(assoc.chapter_id)

        summary: dict = {"updated": {}, "dangling": {}}
        for (collection, field), by_target in expected.items():
            existing = set(self.db.all_ids(collection))
            for item_id in existing:
                self.db.set_backlinks(collection, item_id, field, list(by_target.get(item_id, ())))
            summary["updated"][collection] = len(existing)
            dangling = sorted(set(by_target) - existing)
            if dangling:
                summary["dangling"][collection] = dangling
                logger.warning(
                    f"{len(dangling)} quiz reference(s) to missing {collection}: "
                    f"{', '.join(dangling[:10])}"
                )
        logger.info(f"Backlinks rebuilt: {summary['updated']}")
        return summary

    # ─── Internals ────────────────────────────────────────────────────────

    def _link(self, quiz_id: str, assoc: Associations, warnings: list[str]):
        if assoc.chapter_id:
            self._mutate("add", CHAPTERS, assoc.chapter_id, "quizIds", quiz_id, warnings)
        if assoc.class_subject:
            self._mutate("add", CLASSES, assoc.class_id, "associatedSubjectIds", assoc.subject_id, warnings)
        if assoc.subject_chapter:
            self._mutate("add", SUBJECTS, assoc.subject_id, "associatedChapterIds", assoc.chapter_id, warnings)
        if assoc.exam_id:
            self._mutate("add", EXAMS, assoc.exam_id, "quizIds", quiz_id, warnings)

    def _unlink_pair(
        self,
        collection: str,
        field: str,
        pair: tuple[str, str],
        query: dict,
        quiz_id: str,
        warnings: list[str],
    ):
        """
        Class→subject and subject→chapter links are shared by every quiz with
        that pair; only drop the link when no other quiz still uses it.
        """
        owner_id, value = pair
        try:
            still_used = self.db.count_quizzes(query, exclude_id=quiz_id)
        except QuizBankError as e:
            warnings.append(f"could not check {collection}/{owner_id} usage: {e.message}")
            logger.warning(f"Backlink usage check failed for {collection}/{owner_id}: {e}")
            return
        if still_used:
            logger.debug(
                f"Keeping {collection}/{owner_id}.{field} -> {value}: "
                f"used by {still_used} other quiz(zes)"
            )
            return
        self._mutate("remove", collection, owner_id, field, value, warnings)

    def _mutate(
        self,
        action: str,
        collection: str,
        item_id: str,
        field: str,
        value: str,
        warnings: list[str],
    ):
        op: Callable[..., bool] = self.db.add_to_set if action == "add" else self.db.pull
        target = f"{collection}/{item_id}.{field}"
        try:
            matched = op(collection, item_id, field, value)
        except QuizBankError as e:
            warnings.append(f"{action} {value} on {target} failed: {e.message}")
            logger.warning(f"Backlink {action} {value} on {target} failed: {e}")
            return
        if not matched:
            warnings.append(f"{target} not found")
            logger.warning(f"Backlink target missing: {target}")
            return
        logger.info(f"Backlink {action} {value} on {target}")

    def _log_pass(self, operation: str, quiz_id: str, warnings: list[str]):
        if warnings:
            logger.warning(
                f"Backlink reconciliation for {operation} of quiz {quiz_id} "
                f"finished with {len(warnings)} warning(s)"
            )
