"""
Quiz Lifecycle Service
======================
Orchestrates every quiz write as a short saga:

    RECEIVED → VALIDATED → ASSETS_RESOLVED → PERSISTED
             → BACKLINKS_RECONCILED → COMPLETE

with two terminal failure states:

    REJECTED_INVALID         validation or upload failed; nothing persisted
    PERSISTED_WITH_WARNINGS  the quiz was saved, but cleanup or backlink
                             reconciliation did not fully succeed

Only the primary document write is synchronous with the caller. Orphaned
image cleanup and backlink reconciliation run on the background worker
after the write succeeded, so a failed write never deletes anything the
previous document still references.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .assets import (
    AssetLifecycleManager,
    carry_forward_storage_ids,
    collect_storage_ids,
    diff_for_cleanup,
)
from .background_worker import BackgroundWorker
from .database import Database, utcnow
from .errors import (
    BackendUnavailableError,
    NotFoundError,
    QuizBankError,
    ValidationError,
)
from .integrity import Associations, IntegrityCoordinator
from .models import QuizStatus, new_object_id
from .schema_adapter import adapt_for_read, normalize, resolve_status
from .storage import AssetStoreError

logger = logging.getLogger(__name__)

QUIZ_FOLDER = "quizzes"


class LifecycleState(Enum):
    """States a single quiz write passes through."""
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    ASSETS_RESOLVED = "ASSETS_RESOLVED"
    PERSISTED = "PERSISTED"
    BACKLINKS_RECONCILED = "BACKLINKS_RECONCILED"
    COMPLETE = "COMPLETE"
    REJECTED_INVALID = "REJECTED_INVALID"
    PERSISTED_WITH_WARNINGS = "PERSISTED_WITH_WARNINGS"


@dataclass
class LifecycleResult:
    """
    Outcome of a create/update/delete.

    ``state`` stays PERSISTED when the follow-up work was queued; it is
    COMPLETE or PERSISTED_WITH_WARNINGS when the follow-up already ran.
    """
    quiz_id: str
    state: LifecycleState = LifecycleState.RECEIVED
    uploaded_count: int = 0
    cleanup_count: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class MigrationReport:
    scanned: int = 0
    migrated: list[str] = field(default_factory=list)
    invalid: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class SweepReport:
    stored: int = 0
    referenced: int = 0
    orphaned: list[str] = field(default_factory=list)
    failed: int = 0


def is_status_only(payload) -> bool:
    """A ``{"status": ...}`` body changes visibility and nothing else."""
    return isinstance(payload, dict) and set(payload) == {"status"}


def quiz_folder(quiz_id: str) -> str:
    return f"{QUIZ_FOLDER}/{quiz_id}"


class QuizLifecycleService:
    """
    Entry point for all quiz operations.

    Collaborators are injected once at startup and shared by all requests;
    the service itself holds no per-request state.
    """

    def __init__(
        self,
        db: Database,
        assets: AssetLifecycleManager,
        integrity: IntegrityCoordinator,
        worker: BackgroundWorker,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.assets = assets
        self.integrity = integrity
        self.worker = worker
        self.clock = clock or utcnow

    # ─── Writes ───────────────────────────────────────────────────────────

    def create(self, payload) -> LifecycleResult:
        """
        Validate, upload inline images, insert as a Draft, then link the new
        quiz into its exam/chapter/class/subject.
        """
        quiz_id = new_object_id()
        result = LifecycleResult(quiz_id)
        self._transition(result, LifecycleState.RECEIVED, "create")

        payload = self._with_resolved_status(payload)
        quiz = self._validate(result, payload)

        now = self.clock()
        doc = quiz.to_document()
        doc.update(
            {
                "_id": quiz_id,
                "status": QuizStatus.DRAFT.value,
                "createdAt": now,
                "updatedAt": now,
            }
        )
        doc = carry_forward_storage_ids({}, doc)

        resolved, uploaded = self._resolve_assets(result, doc)
        self._persist(result, uploaded, self.db.insert_quiz, resolved)

        self._dispatch(
            result,
            "create",
            orphaned=set(),
            old=Associations(),
            new=Associations.from_document(resolved),
        )
        return result

    def update(self, quiz_id: str, payload) -> LifecycleResult:
        """
        Full replacement of an existing quiz, or a status-only change when
        the body is exactly ``{"status": ...}``.
        """
        existing = self._load(quiz_id)
        result = LifecycleResult(quiz_id)
        self._transition(result, LifecycleState.RECEIVED, "update")

        if is_status_only(payload):
            return self._update_status(result, payload["status"])

        previous = adapt_for_read(existing)
        payload = self._with_resolved_status(payload)
        quiz = self._validate(result, payload)

        doc = quiz.to_document()
        doc["_id"] = quiz_id
        if payload.get("status") is None:
            doc["status"] = existing.get("status") or QuizStatus.DRAFT.value
        doc["createdAt"] = existing.get("createdAt") or self.clock()
        doc["updatedAt"] = self.clock()
        doc = carry_forward_storage_ids(previous, doc)

        resolved, uploaded = self._resolve_assets(result, doc)
        orphaned = diff_for_cleanup(previous, resolved)

        def replace(document: dict):
            if not self.db.replace_quiz(quiz_id, document):
                raise NotFoundError("Quiz not found.")

        self._persist(result, uploaded, replace, resolved)

        self._dispatch(
            result,
            "update",
            orphaned=orphaned,
            old=Associations.from_document(existing),
            new=Associations.from_document(resolved),
        )
        return result

    def delete(self, quiz_id: str) -> LifecycleResult:
        """Delete the document, then its images and backlinks."""
        existing = self._load(quiz_id)
        result = LifecycleResult(quiz_id)
        self._transition(result, LifecycleState.RECEIVED, "delete")

        storage_ids = collect_storage_ids(adapt_for_read(existing))
        if not self.db.delete_quiz(quiz_id):
            raise NotFoundError("Quiz not found.")
        self._transition(result, LifecycleState.PERSISTED, "delete")

        self._dispatch(
            result,
            "delete",
            orphaned=storage_ids,
            old=Associations.from_document(existing),
            new=Associations(),
        )
        return result

    # ─── Reads ────────────────────────────────────────────────────────────

    def get(self, quiz_id: str) -> dict:
        return adapt_for_read(self._load(quiz_id))

    def list(self) -> list[dict]:
        """All quizzes, newest first, in canonical shape."""
        return [adapt_for_read(doc) for doc in self.db.list_quizzes()]

    # ─── Maintenance ──────────────────────────────────────────────────────

    def migrate_legacy(self, dry_run: bool = False) -> MigrationReport:
        """
        Rewrite every stored quiz that is not yet in canonical shape.

        Documents that cannot be normalized are reported and left alone.
        Generated ids are derived from the quiz id, so a dry run reports
        exactly what a real run writes.
        """
        report = MigrationReport()
        for doc in self.db.all_quizzes():
            report.scanned += 1
            quiz_id = str(doc["_id"])
            try:
                canonical = normalize(
                    self._with_resolved_status(doc), id_seed=quiz_id
                ).to_document()
            except ValidationError as e:
                report.invalid[quiz_id] = e.details or [e.message]
                logger.warning(f"Quiz {quiz_id} cannot be migrated: {e.details}")
                continue

            canonical.pop("_id", None)
            current = {k: v for k, v in doc.items() if k != "_id"}
            if canonical == current:
                continue

            report.migrated.append(quiz_id)
            if dry_run:
                continue
            self.db.replace_quiz(quiz_id, canonical)
            self.integrity.on_update(
                quiz_id,
                Associations.from_document(doc),
                Associations.from_document(canonical),
            )
            logger.info(f"Migrated quiz {quiz_id} to canonical shape")

        logger.info(
            f"Migration {'(dry run) ' if dry_run else ''}scanned {report.scanned}, "
            f"migrated {len(report.migrated)}, invalid {len(report.invalid)}"
        )
        return report

    def sweep_orphaned_assets(self, dry_run: bool = False) -> SweepReport:
        """
        Delete stored quiz images that no quiz references any more.

        Catches leftovers of cleanups that failed after a successful write.
        """
        try:
            stored = set(self.assets.store.list_ids(QUIZ_FOLDER))
        except AssetStoreError as e:
            raise BackendUnavailableError(
                f"Could not list stored images: {e}"
            ) from e
        referenced: set[str] = set()
        for doc in self.db.all_quizzes():
            referenced |= collect_storage_ids(adapt_for_read(doc))

        report = SweepReport(
            stored=len(stored),
            referenced=len(referenced),
            orphaned=sorted(stored - referenced),
        )
        if report.orphaned and not dry_run:
            report.failed = self.assets.delete_assets(report.orphaned)
        logger.info(
            f"Asset sweep {'(dry run) ' if dry_run else ''}found "
            f"{len(report.orphaned)} orphaned of {report.stored} stored image(s)"
        )
        return report

    # ─── Saga Steps ───────────────────────────────────────────────────────

    def _load(self, quiz_id: str) -> dict:
        existing = self.db.get_quiz(quiz_id)
        if existing is None:
            raise NotFoundError("Quiz not found.")
        return existing

    def _with_resolved_status(self, payload):
        if isinstance(payload, dict) and payload.get("status") is not None:
            return {**payload, "status": resolve_status(payload["status"]).value}
        return payload

    def _validate(self, result: LifecycleResult, payload):
        try:
            quiz = normalize(payload)
        except ValidationError as e:
            self._reject(result, f"validation failed: {'; '.join(e.details) or e.message}")
            raise
        self._transition(result, LifecycleState.VALIDATED, f"{quiz.question_count} question(s)")
        return quiz

    def _resolve_assets(
        self, result: LifecycleResult, doc: dict
    ) -> tuple[dict, list[str]]:
        try:
            resolved, uploaded = self.assets.resolve_for_persist(
                doc, quiz_folder(result.quiz_id)
            )
        except QuizBankError as e:
            self._reject(result, e.message)
            raise
        result.uploaded_count = len(uploaded)
        self._transition(
            result, LifecycleState.ASSETS_RESOLVED, f"{len(uploaded)} upload(s)"
        )
        return resolved, uploaded

    def _persist(
        self,
        result: LifecycleResult,
        uploaded: list[str],
        write: Callable[[dict], object],
        doc: dict,
    ):
        """Run the primary write; on failure remove this write's uploads."""
        try:
            write(doc)
        except QuizBankError as e:
            if uploaded:
                logger.warning(
                    f"Persist of quiz {result.quiz_id} failed, removing "
                    f"{len(uploaded)} new upload(s)"
                )
                self.assets.delete_assets(uploaded)
            self._reject(result, e.message)
            raise
        self._transition(result, LifecycleState.PERSISTED, "primary write done")

    def _update_status(self, result: LifecycleResult, value) -> LifecycleResult:
        status = resolve_status(value)
        self._transition(result, LifecycleState.VALIDATED, f"status={status.value}")
        if not self.db.update_quiz_fields(
            result.quiz_id, status=status.value, updatedAt=self.clock()
        ):
            raise NotFoundError("Quiz not found.")
        self._transition(result, LifecycleState.PERSISTED, "status only")
        self._transition(result, LifecycleState.COMPLETE, "no follow-up needed")
        return result

    def _dispatch(
        self,
        result: LifecycleResult,
        operation: str,
        orphaned: set[str],
        old: Associations,
        new: Associations,
    ):
        result.cleanup_count = len(orphaned)
        warnings = self.worker.submit(
            self._follow_up,
            result.quiz_id,
            operation,
            orphaned,
            old,
            new,
            description=f"{operation} follow-up for quiz {result.quiz_id}",
        )
        if warnings is None:
            return
        result.warnings = warnings
        if warnings:
            result.state = LifecycleState.PERSISTED_WITH_WARNINGS
        else:
            result.state = LifecycleState.COMPLETE

    def _follow_up(
        self,
        quiz_id: str,
        operation: str,
        orphaned: set[str],
        old: Associations,
        new: Associations,
    ) -> list[str]:
        """Cleanup plus backlink reconciliation. Runs on the worker."""
        warnings: list[str] = []
        try:
            if orphaned:
                failed = self.assets.delete_assets(orphaned)
                if failed:
                    warnings.append(f"{failed} image(s) could not be deleted")

            if operation == "create":
                warnings.extend(self.integrity.on_create(quiz_id, new))
            elif operation == "update":
                warnings.extend(self.integrity.on_update(quiz_id, old, new))
            else:
                warnings.extend(self.integrity.on_delete(quiz_id, old))
        except Exception as e:
            logger.error(f"[{operation}] follow-up for quiz {quiz_id} failed", exc_info=True)
            warnings.append(f"{operation} follow-up failed: {e}")

        state = (
            LifecycleState.PERSISTED_WITH_WARNINGS if warnings
            else LifecycleState.COMPLETE
        )
        logger.info(
            f"[{operation}] quiz {quiz_id}: {LifecycleState.BACKLINKS_RECONCILED.value} "
            f"→ {state.value}"
        )
        return warnings

    def _transition(self, result: LifecycleResult, state: LifecycleState, note: str = ""):
        result.state = state
        logger.info(f"quiz {result.quiz_id}: {state.value}{f' ({note})' if note else ''}")

    def _reject(self, result: LifecycleResult, reason: str):
        result.state = LifecycleState.REJECTED_INVALID
        logger.warning(f"quiz {result.quiz_id}: REJECTED_INVALID ({reason})")
