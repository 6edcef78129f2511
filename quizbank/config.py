"""
Service Configuration
=====================
Runtime settings, read from the environment with sensible defaults, and
the logging setup shared by the HTTP server and the CLI.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

# Project root: one level up from /quizbank/ package
_PROJECT_ROOT = Path(__file__).parent.parent.absolute()

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class ServiceConfig:
    """Configuration for the quiz bank service."""

    # Document store
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "database"
    server_selection_timeout_ms: int = 5000

    # Object store
    asset_backend: str = "local"
    uploads_dir: str = field(default_factory=lambda: str(_PROJECT_ROOT / "uploads"))
    cloudinary_cloud_name: str = ""
    cloudinary_api_key: str = ""
    cloudinary_api_secret: str = ""
    upload_timeout: float = 30.0

    # Background cleanup / backlink reconciliation
    worker_threads: int = 2
    queue_size: int = 256
    inline_tasks: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> "ServiceConfig":
        """Build from environment variables; keyword overrides win."""
        env = os.environ
        values = {
            "mongodb_uri": env.get("MONGODB_URI", cls.mongodb_uri),
            "mongodb_db": env.get("MONGODB_DB", cls.mongodb_db),
            "asset_backend": env.get("QUIZBANK_ASSET_BACKEND", cls.asset_backend).lower(),
            "uploads_dir": env.get("QUIZBANK_UPLOADS_DIR", str(_PROJECT_ROOT / "uploads")),
            "cloudinary_cloud_name": env.get("CLOUDINARY_CLOUD_NAME", ""),
            "cloudinary_api_key": env.get("CLOUDINARY_API_KEY", ""),
            "cloudinary_api_secret": env.get("CLOUDINARY_API_SECRET", ""),
            "upload_timeout": float(env.get("QUIZBANK_UPLOAD_TIMEOUT", cls.upload_timeout)),
            "worker_threads": int(env.get("QUIZBANK_WORKERS", cls.worker_threads)),
            "queue_size": int(env.get("QUIZBANK_QUEUE_SIZE", cls.queue_size)),
            "log_level": env.get("QUIZBANK_LOG_LEVEL", cls.log_level),
            "log_file": env.get("QUIZBANK_LOG_FILE") or None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def merged(self, overrides: Optional[dict]) -> "ServiceConfig":
        """Copy with matching keys from a Flask-style config dict applied."""
        if not overrides:
            return self
        names = {f.name for f in fields(self)}
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, value in overrides.items():
            name = key.lower()
            if name in names:
                values[name] = value
        return ServiceConfig(**values)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure the ``quizbank`` logger hierarchy once."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    pkg_logger = logging.getLogger("quizbank")
    pkg_logger.setLevel(log_level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    # Console handler
    if not pkg_logger.handlers:
        console = logging.StreamHandler()
        console.setLevel(log_level)
        console.setFormatter(formatter)
        pkg_logger.addHandler(console)

    # File handler
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        pkg_logger.addHandler(file_handler)
