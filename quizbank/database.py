"""
MongoDB Database Layer
======================
Persistent storage for quizzes, exams and the class/subject/chapter
taxonomy.

A ``Database`` is constructed once per process around an injected
``MongoClient`` and closed on shutdown. Driver errors are translated into
the engine's error taxonomy at this boundary:

    DuplicateKeyError              → ConflictError
    any other PyMongoError         → BackendUnavailableError

Backlink arrays are only ever changed through ``add_to_set`` / ``pull``
(``$addToSet`` / ``$pull``), so repeating a mutation is always safe.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from .errors import BackendUnavailableError, ConflictError, ValidationError

logger = logging.getLogger(__name__)

QUIZZES = "quizzes"
EXAMS = "exams"
CHAPTERS = "chapters"
CLASSES = "classes"
SUBJECTS = "subjects"

TAXONOMY_COLLECTIONS = (EXAMS, CHAPTERS, CLASSES, SUBJECTS)

_DUPLICATE_KEY = 11000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value, label: str = "") -> ObjectId:
    """Parse a 24-hex id string. Malformed ids are a validation error."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    raise ValidationError(f"Invalid {label + ' ' if label else ''}ID provided.")


def _serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    if isinstance(doc.get("_id"), ObjectId):
        doc["_id"] = str(doc["_id"])
    return doc


def _translate_errors(method):
    """Map driver exceptions onto ConflictError / BackendUnavailableError."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except PyMongoError as e:
            if getattr(e, "code", None) == _DUPLICATE_KEY:
                raise ConflictError("A record with this name already exists.") from e
            logger.error(f"Document store error in {method.__name__}: {e}")
            raise BackendUnavailableError(
                "The document store is unavailable. Please retry."
            ) from e

    return wrapper


class Database:
    """
    Repository over the quiz bank collections.

    Ids cross this boundary as strings; ObjectId conversion happens here.
    """

    def __init__(self, client: MongoClient, db_name: str):
        self.client = client
        self.db = client[db_name]
        self.db_name = db_name

    @classmethod
    def from_uri(
        cls, uri: str, db_name: str, server_selection_timeout_ms: int = 5000
    ) -> "Database":
        client = MongoClient(
            uri,
            serverSelectionTimeoutMS=server_selection_timeout_ms,
            tz_aware=True,
        )
        logger.info(f"Connected MongoDB client for database {db_name!r}")
        return cls(client, db_name)

    @_translate_errors
    def init_indexes(self):
        """
        Create indexes. Safe to call multiple times.
        Taxonomy names are unique (stored upper-cased).
        """
        for name in TAXONOMY_COLLECTIONS:
            self.db[name].create_index([("name", ASCENDING)], unique=True)
        self.db[QUIZZES].create_index([("createdAt", DESCENDING)])
        self.db[QUIZZES].create_index([("associatedExamId", ASCENDING)])
        self.db[QUIZZES].create_index([("chapterId", ASCENDING)])
        logger.info(f"Indexes ensured on database {self.db_name!r}")

    @_translate_errors
    def ping(self) -> bool:
        self.client.admin.command("ping")
        return True

    def close(self):
        self.client.close()
        logger.info("MongoDB client closed")

    # ─── Quiz CRUD ────────────────────────────────────────────────────────

    @_translate_errors
    def insert_quiz(self, doc: dict) -> str:
        """Insert a quiz document. ``_id`` may be preset (string or ObjectId)."""
        doc = dict(doc)
        if doc.get("_id") is not None:
            doc["_id"] = to_object_id(doc["_id"], "Quiz")
        result = self.db[QUIZZES].insert_one(doc)
        quiz_id = str(result.inserted_id)
        logger.info(f"Inserted quiz id={quiz_id} title={doc.get('title')!r}")
        return quiz_id

    @_translate_errors
    def get_quiz(self, quiz_id: str) -> Optional[dict]:
        oid = to_object_id(quiz_id, "Quiz")
        return _serialize(self.db[QUIZZES].find_one({"_id": oid}))

    @_translate_errors
    def list_quizzes(self) -> list[dict]:
        """All quizzes, newest first."""
        cursor = self.db[QUIZZES].find({}).sort("createdAt", DESCENDING)
        return [_serialize(doc) for doc in cursor]

    @_translate_errors
    def all_quizzes(self, projection: Optional[dict] = None) -> list[dict]:
        """Every quiz document, unordered (maintenance passes)."""
        return [_serialize(doc) for doc in self.db[QUIZZES].find({}, projection)]

    @_translate_errors
    def replace_quiz(self, quiz_id: str, doc: dict) -> bool:
        """Full replacement (not a merge). Returns True if the quiz existed."""
        oid = to_object_id(quiz_id, "Quiz")
        doc = {k: v for k, v in doc.items() if k != "_id"}
        result = self.db[QUIZZES].replace_one({"_id": oid}, doc)
        return result.matched_count > 0

    @_translate_errors
    def update_quiz_fields(self, quiz_id: str, **fields) -> bool:
        """``$set`` individual fields. Returns True if the quiz existed."""
        if not fields:
            return False
        oid = to_object_id(quiz_id, "Quiz")
        result = self.db[QUIZZES].update_one({"_id": oid}, {"$set": fields})
        return result.matched_count > 0

    @_translate_errors
    def delete_quiz(self, quiz_id: str) -> bool:
        oid = to_object_id(quiz_id, "Quiz")
        result = self.db[QUIZZES].delete_one({"_id": oid})
        return result.deleted_count > 0

    @_translate_errors
    def count_quizzes(self, query: dict, exclude_id: Optional[str] = None) -> int:
        query = dict(query)
        if exclude_id:
            query["_id"] = {"$ne": to_object_id(exclude_id, "Quiz")}
        return self.db[QUIZZES].count_documents(query)

    # ─── Taxonomy CRUD ────────────────────────────────────────────────────

    @_translate_errors
    def insert_named(self, collection: str, name: str, **extra) -> str:
        doc = {"name": name, "createdAt": utcnow(), **extra}
        result = self.db[collection].insert_one(doc)
        item_id = str(result.inserted_id)
        logger.info(f"Inserted {collection} id={item_id} name={name!r}")
        return item_id

    @_translate_errors
    def get_named(self, collection: str, item_id: str, label: str = "") -> Optional[dict]:
        oid = to_object_id(item_id, label)
        return _serialize(self.db[collection].find_one({"_id": oid}))

    @_translate_errors
    def find_by_name(
        self, collection: str, name: str, exclude_id: Optional[str] = None
    ) -> Optional[dict]:
        query: dict = {"name": name}
        if exclude_id:
            query["_id"] = {"$ne": to_object_id(exclude_id)}
        return _serialize(self.db[collection].find_one(query))

    @_translate_errors
    def list_named(self, collection: str) -> list[dict]:
        cursor = self.db[collection].find({}).sort("name", ASCENDING)
        return [_serialize(doc) for doc in cursor]

    @_translate_errors
    def rename(self, collection: str, item_id: str, name: str, label: str = "") -> bool:
        oid = to_object_id(item_id, label)
        result = self.db[collection].update_one(
            {"_id": oid}, {"$set": {"name": name, "updatedAt": utcnow()}}
        )
        return result.matched_count > 0

    @_translate_errors
    def delete_named(self, collection: str, item_id: str, label: str = "") -> bool:
        oid = to_object_id(item_id, label)
        result = self.db[collection].delete_one({"_id": oid})
        return result.deleted_count > 0

    @_translate_errors
    def all_ids(self, collection: str) -> list[str]:
        return [str(doc["_id"]) for doc in self.db[collection].find({}, {"_id": 1})]

    # ─── Backlinks ────────────────────────────────────────────────────────

    @_translate_errors
    def add_to_set(self, collection: str, item_id: str, field: str, value: str) -> bool:
        """Add-if-absent. Returns False if the target document does not exist."""
        oid = to_object_id(item_id)
        result = self.db[collection].update_one(
            {"_id": oid}, {"$addToSet": {field: value}}
        )
        return result.matched_count > 0

    @_translate_errors
    def pull(self, collection: str, item_id: str, field: str, value: str) -> bool:
        """Remove-if-present. Returns False if the target document does not exist."""
        oid = to_object_id(item_id)
        result = self.db[collection].update_one(
            {"_id": oid}, {"$pull": {field: value}}
        )
        return result.matched_count > 0

    @_translate_errors
    def set_backlinks(self, collection: str, item_id: str, field: str, values: list[str]) -> bool:
        """Overwrite a whole backlink array (used by the full rebuild)."""
        oid = to_object_id(item_id)
        result = self.db[collection].update_one(
            {"_id": oid}, {"$set": {field: sorted(values)}}
        )
        return result.matched_count > 0
