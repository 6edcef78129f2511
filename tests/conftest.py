"""
Shared fixtures: in-memory MongoDB (mongomock), a filesystem asset store
under tmp_path, an inline background worker and a deterministic clock.
"""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone

import mongomock
import pytest

from quizbank.background_worker import BackgroundWorker
from quizbank.config import ServiceConfig
from quizbank.database import Database
from quizbank.services import build_services
from quizbank.storage import LocalAssetStore

# 1x1 transparent PNG
TINY_PNG = (
    "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42"
    "mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


class FakeClock:
    """Returns a strictly increasing, whole-second UTC time on every call."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(minutes=1)
        return self.now


def make_question(text: str = "What is 2 + 2?", image: str = None, **extra) -> dict:
    question = {
        "text": text,
        "options": [
            {"text": "3", "isCorrect": False},
            {"text": "4", "isCorrect": True},
            {"text": "5", "isCorrect": False},
        ],
    }
    if image:
        question["imageUrl"] = image
    question.update(extra)
    return question


def make_payload(**overrides) -> dict:
    payload = {
        "title": "Arithmetic Warm-up",
        "testType": "Mock",
        "tags": ["math"],
        "sections": [
            {
                "name": "Part A",
                "questionLimit": 2,
                "timerMinutes": 10,
                "questions": [make_question(), make_question("What is 3 x 3?")],
            }
        ],
    }
    payload.update(overrides)
    return copy.deepcopy(payload)


@pytest.fixture
def database():
    db = Database(mongomock.MongoClient(tz_aware=True), "quizbank_test")
    db.init_indexes()
    return db


@pytest.fixture
def store(tmp_path):
    return LocalAssetStore(tmp_path / "uploads")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(database, store, clock, tmp_path):
    config = ServiceConfig(
        mongodb_db="quizbank_test",
        uploads_dir=str(tmp_path / "uploads"),
        inline_tasks=True,
    )
    return build_services(
        config,
        database=database,
        asset_store=store,
        worker=BackgroundWorker(inline=True),
        clock=clock,
    )


@pytest.fixture
def quizzes(services):
    return services.quizzes
