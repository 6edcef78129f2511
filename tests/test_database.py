"""
Test Suite for the MongoDB Database Layer
=========================================
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from quizbank.database import EXAMS, QUIZZES, Database, to_object_id
from quizbank.errors import BackendUnavailableError, ConflictError, ValidationError
from quizbank.models import new_object_id


class TestObjectIds:

    def test_valid(self):
        oid = new_object_id()
        assert str(to_object_id(oid)) == oid

    @pytest.mark.parametrize("value", ["", "xyz", "123", None, 42])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            to_object_id(value, "Exam")


class TestErrorTranslation:

    def test_duplicate_name_is_conflict(self, database):
        database.insert_named(EXAMS, "CAT")
        with pytest.raises(ConflictError):
            database.insert_named(EXAMS, "CAT")

    def test_connection_failure_is_backend_unavailable(self):
        client = MagicMock()
        client.__getitem__.return_value.__getitem__.return_value.find_one.side_effect = \
            ServerSelectionTimeoutError("no servers")
        db = Database(client, "quizbank_test")

        with pytest.raises(BackendUnavailableError):
            db.get_quiz(new_object_id())


class TestQuizDocuments:

    def test_insert_with_preset_id(self, database):
        quiz_id = new_object_id()
        assert database.insert_quiz({"_id": quiz_id, "title": "T"}) == quiz_id
        assert database.get_quiz(quiz_id)["_id"] == quiz_id

    def test_replace_and_update_report_existence(self, database):
        missing = new_object_id()
        assert database.replace_quiz(missing, {"title": "x"}) is False
        assert database.update_quiz_fields(missing, status="Draft") is False
        assert database.delete_quiz(missing) is False

    def test_replace_is_not_a_merge(self, database):
        quiz_id = database.insert_quiz({"title": "T", "tags": ["a"]})
        database.replace_quiz(quiz_id, {"_id": "ignored", "title": "U"})
        assert database.get_quiz(quiz_id) == {"_id": quiz_id, "title": "U"}

    def test_count_excludes_given_quiz(self, database):
        a = database.insert_quiz({"classId": "c1"})
        database.insert_quiz({"classId": "c1"})
        assert database.count_quizzes({"classId": "c1"}) == 2
        assert database.count_quizzes({"classId": "c1"}, exclude_id=a) == 1


class TestBacklinkPrimitives:

    def test_add_to_set_and_pull(self, database):
        exam_id = database.insert_named(EXAMS, "CAT", quizIds=[])
        assert database.add_to_set(EXAMS, exam_id, "quizIds", "q1")
        assert database.add_to_set(EXAMS, exam_id, "quizIds", "q1")
        assert database.get_named(EXAMS, exam_id)["quizIds"] == ["q1"]
        assert database.pull(EXAMS, exam_id, "quizIds", "q1")
        assert database.pull(EXAMS, exam_id, "quizIds", "q1")
        assert database.get_named(EXAMS, exam_id)["quizIds"] == []

    def test_missing_target_reports_false(self, database):
        assert database.add_to_set(EXAMS, new_object_id(), "quizIds", "q1") is False

    def test_indexes(self, database):
        names = database.db[EXAMS].index_information()
        assert any(info.get("unique") for info in names.values())
        assert database.db[QUIZZES].index_information()
