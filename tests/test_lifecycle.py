"""
Test Suite for the Quiz Lifecycle Service
=========================================
End-to-end create / update / delete sagas against mongomock and a local
asset store, with the background worker running inline.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from quizbank.assets import AssetLifecycleManager
from quizbank.background_worker import BackgroundWorker
from quizbank.database import EXAMS
from quizbank.errors import (
    AssetUploadError,
    BackendUnavailableError,
    NotFoundError,
    ValidationError,
)
from quizbank.integrity import IntegrityCoordinator
from quizbank.lifecycle import (
    LifecycleState,
    QuizLifecycleService,
    is_status_only,
)
from quizbank.models import new_object_id
from quizbank.storage import AssetStoreError, StoredAsset

from conftest import TINY_PNG, make_payload, make_question


@pytest.fixture
def exam_id(services):
    return services.taxonomy[EXAMS].create("jee main")["_id"]


def _quiz_ids(services, exam_id):
    return services.taxonomy[EXAMS].get(exam_id)["quizIds"]


def _with_images(**overrides):
    question = make_question("Identify the graph", image=TINY_PNG)
    question["options"][1]["imageUrl"] = TINY_PNG
    payload = make_payload(**overrides)
    payload["sections"][0]["questions"] = [question, make_question("Plain one")]
    return payload


# ═══════════════════════════════════════════════════════════════════════════════
# CREATE
# ═══════════════════════════════════════════════════════════════════════════════


class TestCreate:

    def test_create_persists_draft_with_timestamps(self, quizzes, database):
        result = quizzes.create(make_payload(status="Published"))

        assert result.state == LifecycleState.COMPLETE
        stored = database.get_quiz(result.quiz_id)
        assert stored["status"] == "Draft"
        assert stored["createdAt"] is not None
        assert stored["createdAt"] == stored["updatedAt"]
        assert stored["sections"][0]["name"] == "Part A"

    def test_create_links_exam(self, services, quizzes, exam_id):
        result = quizzes.create(make_payload(associatedExamId=exam_id))
        assert _quiz_ids(services, exam_id) == [result.quiz_id]

    def test_create_uploads_inline_images(self, quizzes, store):
        result = quizzes.create(_with_images())

        assert result.uploaded_count == 2
        doc = quizzes.get(result.quiz_id)
        question = doc["sections"][0]["questions"][0]
        assert question["imageUrl"].startswith(f"/uploads/images/quizzes/{result.quiz_id}/")
        assert question["options"][1]["imagePublicId"].startswith(f"quizzes/{result.quiz_id}/")
        assert len(store.list_ids(f"quizzes/{result.quiz_id}")) == 2

    def test_invalid_payload_is_rejected(self, quizzes, database):
        payload = make_payload()
        for option in payload["sections"][0]["questions"][0]["options"]:
            option["isCorrect"] = False

        with pytest.raises(ValidationError):
            quizzes.create(payload)
        assert database.list_quizzes() == []

    def test_missing_exam_persists_with_warnings(self, quizzes, database):
        result = quizzes.create(make_payload(associatedExamId=new_object_id()))

        assert result.state == LifecycleState.PERSISTED_WITH_WARNINGS
        assert result.warnings
        assert database.get_quiz(result.quiz_id) is not None

    def test_queued_follow_up_leaves_state_persisted(self, database, store):
        worker = MagicMock()
        worker.submit.return_value = None
        service = QuizLifecycleService(
            database, AssetLifecycleManager(store), IntegrityCoordinator(database), worker
        )

        result = service.create(make_payload())

        assert result.state == LifecycleState.PERSISTED
        assert worker.submit.call_count == 1

    def test_crashed_follow_up_persists_with_warnings(self, quizzes, database):
        with patch.object(quizzes.integrity, "on_create",
                          side_effect=RuntimeError("connection reset")):
            result = quizzes.create(make_payload())

        assert result.state == LifecycleState.PERSISTED_WITH_WARNINGS
        assert any("connection reset" in w for w in result.warnings)
        assert database.get_quiz(result.quiz_id) is not None


class TestUploadFailureAtomicity:
    """Second of three uploads fails: nothing persisted, nothing linked."""

    def test_nothing_persisted_and_first_upload_compensated(self, database, services, exam_id):
        store = MagicMock()
        store.upload.side_effect = [
            StoredAsset("https://cdn/1.png", "quizzes/x/1"),
            AssetStoreError("Request Timeout"),
            StoredAsset("https://cdn/3.png", "quizzes/x/3"),
        ]
        store.delete_many.return_value = []
        service = QuizLifecycleService(
            database,
            AssetLifecycleManager(store),
            IntegrityCoordinator(database),
            BackgroundWorker(inline=True),
        )
        payload = make_payload(associatedExamId=exam_id)
        payload["sections"][0]["questions"] = [
            make_question("First", image=TINY_PNG),
            make_question("Second", image=TINY_PNG),
            make_question("Third", image=TINY_PNG),
        ]

        with pytest.raises(AssetUploadError) as exc:
            service.create(payload)

        assert "Second" in exc.value.message
        assert database.list_quizzes() == []
        assert _quiz_ids(services, exam_id) == []
        store.delete_many.assert_called_once_with(["quizzes/x/1"])

    def test_failed_insert_removes_new_uploads(self, quizzes, database, store):
        with patch.object(database, "insert_quiz",
                          side_effect=BackendUnavailableError("down")):
            with pytest.raises(BackendUnavailableError):
                quizzes.create(_with_images())
        assert store.list_ids("quizzes") == []


# ═══════════════════════════════════════════════════════════════════════════════
# UPDATE
# ═══════════════════════════════════════════════════════════════════════════════


class TestUpdate:

    def test_status_only_leaves_content_untouched(self, quizzes, database):
        quiz_id = quizzes.create(make_payload()).quiz_id
        before = database.get_quiz(quiz_id)

        result = quizzes.update(quiz_id, {"status": "published"})

        after = database.get_quiz(quiz_id)
        assert result.state == LifecycleState.COMPLETE
        assert after["status"] == "Published"
        assert after["sections"] == before["sections"]
        assert after["title"] == before["title"]
        assert after["createdAt"] == before["createdAt"]
        assert after["updatedAt"] > before["updatedAt"]

    def test_status_only_rejects_unknown_status(self, quizzes):
        quiz_id = quizzes.create(make_payload()).quiz_id
        with pytest.raises(ValidationError):
            quizzes.update(quiz_id, {"status": "Archived"})

    def test_full_update_keeps_created_at_and_status(self, quizzes, database):
        quiz_id = quizzes.create(make_payload()).quiz_id
        quizzes.update(quiz_id, {"status": "Private"})
        created = database.get_quiz(quiz_id)["createdAt"]

        quizzes.update(quiz_id, make_payload(title="Renamed"))

        stored = database.get_quiz(quiz_id)
        assert stored["title"] == "Renamed"
        assert stored["status"] == "Private"
        assert stored["createdAt"] == created
        assert stored["updatedAt"] > created

    def test_full_update_can_set_status(self, quizzes, database):
        quiz_id = quizzes.create(make_payload()).quiz_id
        quizzes.update(quiz_id, make_payload(status="Published"))
        assert database.get_quiz(quiz_id)["status"] == "Published"

    def test_update_is_full_replacement(self, quizzes, database):
        quiz_id = quizzes.create(make_payload(tags=["a", "b"])).quiz_id
        quizzes.update(quiz_id, make_payload(tags=[]))
        assert database.get_quiz(quiz_id)["tags"] == []

    def test_reassociation_moves_backlink(self, services, quizzes):
        exams = services.taxonomy[EXAMS]
        e1 = exams.create("E1")["_id"]
        e2 = exams.create("E2")["_id"]
        quiz_id = quizzes.create(make_payload(associatedExamId=e1)).quiz_id

        quizzes.update(quiz_id, make_payload(associatedExamId=e2))

        assert exams.get(e1)["quizIds"] == []
        assert exams.get(e2)["quizIds"] == [quiz_id]

    def test_replaced_and_removed_images_are_cleaned_up(self, quizzes, store):
        quiz_id = quizzes.create(_with_images()).quiz_id
        doc = quizzes.get(quiz_id)
        question = doc["sections"][0]["questions"][0]
        old_question_image = question["imagePublicId"]

        # replace the question image, drop the option image
        edited = copy.deepcopy(doc)
        q = edited["sections"][0]["questions"][0]
        q["imageUrl"] = TINY_PNG
        q.pop("imagePublicId")
        q["options"][1].pop("imageUrl")
        q["options"][1].pop("imagePublicId")

        result = quizzes.update(quiz_id, edited)

        assert result.uploaded_count == 1
        assert result.cleanup_count == 2
        remaining = store.list_ids("quizzes")
        new_image = quizzes.get(quiz_id)["sections"][0]["questions"][0]["imagePublicId"]
        assert remaining == [new_image]
        assert old_question_image not in remaining

    def test_echoed_url_without_public_id_is_kept(self, quizzes, store):
        quiz_id = quizzes.create(_with_images()).quiz_id
        edited = quizzes.get(quiz_id)
        for question in edited["sections"][0]["questions"]:
            question.pop("imagePublicId", None)
            for option in question["options"]:
                option.pop("imagePublicId", None)

        result = quizzes.update(quiz_id, edited)

        assert result.cleanup_count == 0
        assert len(store.list_ids("quizzes")) == 2
        stored = quizzes.get(quiz_id)["sections"][0]["questions"][0]
        assert stored["imagePublicId"].startswith(f"quizzes/{quiz_id}/")

    def test_foreign_storage_id_is_not_adopted(self, quizzes, store):
        source_id = quizzes.create(_with_images()).quiz_id
        foreign = quizzes.get(source_id)["sections"][0]["questions"][0]
        target_id = quizzes.create(make_payload()).quiz_id
        edited = quizzes.get(target_id)
        question = edited["sections"][0]["questions"][0]
        question["imageUrl"] = foreign["imageUrl"]
        question["imagePublicId"] = foreign["imagePublicId"]

        quizzes.update(target_id, edited)
        assert "imagePublicId" not in quizzes.get(target_id)["sections"][0]["questions"][0]

        result = quizzes.update(target_id, make_payload())
        assert result.cleanup_count == 0
        assert len(store.list_ids(f"quizzes/{source_id}")) == 2

    def test_failed_replace_keeps_old_images(self, quizzes, database, store):
        quiz_id = quizzes.create(_with_images()).quiz_id
        edited = quizzes.get(quiz_id)
        edited["sections"][0]["questions"][0]["imageUrl"] = TINY_PNG

        with patch.object(database, "replace_quiz",
                          side_effect=BackendUnavailableError("down")):
            with pytest.raises(BackendUnavailableError):
                quizzes.update(quiz_id, edited)

        # the two original images survive, the new upload was removed
        assert len(store.list_ids("quizzes")) == 2

    def test_update_unknown_quiz(self, quizzes):
        with pytest.raises(NotFoundError):
            quizzes.update(new_object_id(), make_payload())

    def test_update_malformed_id(self, quizzes):
        with pytest.raises(ValidationError):
            quizzes.update("1234", {"status": "Draft"})


# ═══════════════════════════════════════════════════════════════════════════════
# DELETE / READ
# ═══════════════════════════════════════════════════════════════════════════════


class TestDelete:

    def test_delete_removes_document_images_and_backlinks(self, services, quizzes, store, exam_id):
        quiz_id = quizzes.create(_with_images(associatedExamId=exam_id)).quiz_id
        assert _quiz_ids(services, exam_id) == [quiz_id]

        result = quizzes.delete(quiz_id)

        assert result.state == LifecycleState.COMPLETE
        assert result.cleanup_count == 2
        assert store.list_ids("quizzes") == []
        assert _quiz_ids(services, exam_id) == []
        with pytest.raises(NotFoundError):
            quizzes.get(quiz_id)

    def test_duplicated_quiz_does_not_own_source_images(self, quizzes, store):
        source_id = quizzes.create(_with_images()).quiz_id
        duplicate = quizzes.get(source_id)
        duplicate.pop("_id")
        copy_id = quizzes.create(duplicate).quiz_id

        result = quizzes.delete(copy_id)

        assert result.cleanup_count == 0
        assert len(store.list_ids(f"quizzes/{source_id}")) == 2
        kept = quizzes.get(source_id)["sections"][0]["questions"][0]["imagePublicId"]
        assert kept in store.list_ids("quizzes")

    def test_delete_unknown_quiz(self, quizzes):
        with pytest.raises(NotFoundError):
            quizzes.delete(new_object_id())


class TestRead:

    def test_list_newest_first(self, quizzes):
        first = quizzes.create(make_payload(title="First")).quiz_id
        second = quizzes.create(make_payload(title="Second")).quiz_id
        assert [q["_id"] for q in quizzes.list()] == [second, first]

    def test_legacy_document_is_adapted(self, quizzes, database):
        quiz_id = database.insert_quiz({
            "title": "Legacy",
            "testType": "Mock",
            "timerMinutes": 30,
            "questions": [make_question()],
        })
        doc = quizzes.get(quiz_id)
        assert doc["sections"][0]["name"] == "Main Section"
        assert doc["overallTimerMinutes"] == 30.0
        assert doc["sections"][0]["questions"][0]["marks"] == 1.0


# ═══════════════════════════════════════════════════════════════════════════════
# MAINTENANCE
# ═══════════════════════════════════════════════════════════════════════════════


class TestMigrateLegacy:

    def _insert_legacy(self, database):
        return database.insert_quiz({
            "title": "Legacy",
            "testType": "Mock",
            "status": "Published",
            "createdAt": datetime(2023, 5, 1, tzinfo=timezone.utc),
            "questions": [make_question("One?"), make_question("Two?")],
        })

    def test_dry_run_writes_nothing(self, quizzes, database):
        quiz_id = self._insert_legacy(database)
        report = quizzes.migrate_legacy(dry_run=True)
        assert report.migrated == [quiz_id]
        assert "questions" in database.get_quiz(quiz_id)

    def test_migration_rewrites_and_is_idempotent(self, quizzes, database):
        quiz_id = self._insert_legacy(database)

        report = quizzes.migrate_legacy()

        stored = database.get_quiz(quiz_id)
        assert report.migrated == [quiz_id]
        assert "questions" not in stored
        assert stored["sections"][0]["name"] == "Main Section"
        assert stored["status"] == "Published"
        assert quizzes.migrate_legacy().migrated == []

    def test_legacy_labels_survive_read_and_migration(self, quizzes, database):
        quiz_id = database.insert_quiz({
            "title": "Legacy",
            "testType": "Practice Test",
            "classType": "11th",
            "subject": "Physics",
            "chapter": "Kinematics",
            "questions": [make_question()],
        })

        assert quizzes.get(quiz_id)["subject"] == "Physics"
        assert quizzes.migrate_legacy().migrated == [quiz_id]

        stored = database.get_quiz(quiz_id)
        assert (stored["classType"], stored["subject"], stored["chapter"]) == \
            ("11th", "Physics", "Kinematics")

    def test_invalid_documents_are_reported(self, quizzes, database):
        quiz_id = database.insert_quiz({"title": "", "testType": "Mock", "questions": []})
        report = quizzes.migrate_legacy()
        assert quiz_id in report.invalid
        assert report.migrated == []

    def test_created_quizzes_need_no_migration(self, quizzes):
        quizzes.create(_with_images())
        assert quizzes.migrate_legacy(dry_run=True).migrated == []


class TestSweepOrphanedAssets:

    def test_sweep_deletes_only_unreferenced(self, quizzes, store):
        quizzes.create(_with_images())
        orphan = store.upload(TINY_PNG, "quizzes/deadbeef").public_id

        dry = quizzes.sweep_orphaned_assets(dry_run=True)
        assert dry.orphaned == [orphan]
        assert orphan in store.list_ids("quizzes")

        report = quizzes.sweep_orphaned_assets()
        assert report.stored == 3
        assert report.failed == 0
        remaining = store.list_ids("quizzes")
        assert orphan not in remaining
        assert len(remaining) == 2

    def test_store_listing_failure(self, quizzes, store):
        with patch.object(store, "list_ids", side_effect=AssetStoreError("down")):
            with pytest.raises(BackendUnavailableError):
                quizzes.sweep_orphaned_assets()


class TestIsStatusOnly:

    def test_detection(self):
        assert is_status_only({"status": "Draft"})
        assert not is_status_only({"status": "Draft", "title": "x"})
        assert not is_status_only({})
        assert not is_status_only(None)
