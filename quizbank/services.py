"""
Service Wiring
==============
Builds the long-lived collaborators once per process: the MongoDB
``Database``, the asset store, the background worker and the services on
top of them. Both the Flask app factory and the CLI go through
``build_services``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .assets import AssetLifecycleManager
from .background_worker import BackgroundWorker
from .config import ServiceConfig
from .crud import TAXONOMY, TaxonomyService
from .database import Database
from .integrity import IntegrityCoordinator
from .lifecycle import QuizLifecycleService
from .storage import create_asset_store

logger = logging.getLogger(__name__)


@dataclass
class QuizBankServices:
    config: ServiceConfig
    db: Database
    store: object
    worker: BackgroundWorker
    quizzes: QuizLifecycleService
    integrity: IntegrityCoordinator
    taxonomy: dict[str, TaxonomyService] = field(default_factory=dict)

    def close(self):
        """Drain the worker, then close the database client."""
        self.worker.shutdown(wait=True)
        self.db.close()


def build_services(
    config: Optional[ServiceConfig] = None,
    *,
    database: Optional[Database] = None,
    asset_store=None,
    worker: Optional[BackgroundWorker] = None,
    clock=None,
) -> QuizBankServices:
    """
    Wire everything up. Pre-built collaborators (mongomock database, local
    store, inline worker) can be passed in by tests.
    """
    config = config or ServiceConfig.from_env()

    if database is None:
        database = Database.from_uri(
            config.mongodb_uri,
            config.mongodb_db,
            server_selection_timeout_ms=config.server_selection_timeout_ms,
        )
    database.init_indexes()

    store = asset_store if asset_store is not None else create_asset_store(config)

    if worker is None:
        worker = BackgroundWorker(
            threads=config.worker_threads,
            max_queue=config.queue_size,
            inline=config.inline_tasks,
        )
    worker.start()

    integrity = IntegrityCoordinator(database)
    quizzes = QuizLifecycleService(
        database,
        AssetLifecycleManager(store),
        integrity,
        worker,
        clock=clock,
    )
    taxonomy = {name: TaxonomyService(database, name) for name in TAXONOMY}

    logger.info(
        f"Services ready (db={config.mongodb_db!r}, assets={type(store).__name__}, "
        f"inline_tasks={worker.inline})"
    )
    return QuizBankServices(
        config=config,
        db=database,
        store=store,
        worker=worker,
        quizzes=quizzes,
        integrity=integrity,
        taxonomy=taxonomy,
    )
