"""
HTTP Microservice
=================
Flask JSON API for the quiz bank admin backend.

Endpoints:
    GET    /api/health              → Health check
    POST   /quizzes                 → Create a quiz (201, {quizId})
    GET    /quizzes                 → List quizzes, newest first
    GET    /quizzes/<id>            → Read one quiz (canonical shape)
    PUT    /quizzes/<id>            → Full update, or {status} only
    DELETE /quizzes/<id>            → Delete quiz, its images and backlinks
    GET    /<taxonomy>              → List exams|chapters|classes|subjects
    POST   /<taxonomy>              → Create ({name}; exams also {examName})
    GET    /<taxonomy>/<id>         → Read one item
    PATCH  /<taxonomy>/<id>         → Rename (PUT accepted too)
    DELETE /<taxonomy>/<id>         → Delete (no cascade to quizzes)

Errors are returned as {"error": kind, "message": text} with the status
code of the raised QuizBankError.
"""

from __future__ import annotations

import atexit
import logging
from typing import Optional, Union

from flask import (
    Blueprint,
    Flask,
    abort,
    current_app,
    jsonify,
    request,
    send_from_directory,
)
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from . import __version__
from .config import ServiceConfig
from .errors import BackendUnavailableError, QuizBankError, ValidationError
from .lifecycle import is_status_only
from .models import to_jsonable
from .services import QuizBankServices, build_services
from .storage import LocalAssetStore

logger = logging.getLogger(__name__)

api = Blueprint("quizbank", __name__)

TAXONOMY_ROUTE = "/<any(exams, chapters, classes, subjects):collection>"


def create_app(
    config: Optional[Union[dict, ServiceConfig]] = None,
    *,
    services: Optional[QuizBankServices] = None,
) -> Flask:
    """
    Create and configure the Flask app.

    ``config`` is either a ServiceConfig or a Flask-style dict whose keys
    override the environment (``{"MONGODB_DB": "test"}``). Tests pass
    pre-built ``services`` instead.
    """
    app = Flask(__name__)
    CORS(app)

    if isinstance(config, dict):
        app.config.update(config)

    if services is None:
        if isinstance(config, ServiceConfig):
            service_config = config
        else:
            service_config = ServiceConfig.from_env().merged(config)
        services = build_services(service_config)
        atexit.register(services.close)

    app.extensions["quizbank"] = services
    app.register_blueprint(api)
    _register_error_handlers(app)
    return app


def _services() -> QuizBankServices:
    return current_app.extensions["quizbank"]


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


# ─── Error Handling ──────────────────────────────────────────────────────────


def _register_error_handlers(app: Flask):
    @app.errorhandler(QuizBankError)
    def handle_quizbank_error(e: QuizBankError):
        if e.status_code >= 500:
            logger.error(f"{request.method} {request.path} failed: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        kind = (e.name or "error").lower().replace(" ", "_")
        return jsonify({"error": kind, "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        logger.error(f"Unhandled error on {request.method} {request.path}", exc_info=e)
        return jsonify({
            "error": "internal_error",
            "message": "Internal Server Error",
        }), 500


# ─── Health Check ─────────────────────────────────────────────────────────────


@api.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    services = _services()
    try:
        services.db.ping()
        database = "ok"
    except BackendUnavailableError:
        database = "unavailable"
    body = {
        "status": "healthy" if database == "ok" else "degraded",
        "service": "quizbank",
        "version": __version__,
        "database": database,
        "queued_tasks": services.worker.pending(),
    }
    return jsonify(body), 200 if database == "ok" else 503


# ─── Quizzes ─────────────────────────────────────────────────────────────────


@api.route("/quizzes", methods=["POST"])
def create_quiz():
    result = _services().quizzes.create(_json_body())
    return jsonify({
        "message": "Quiz created successfully",
        "quizId": result.quiz_id,
        "state": result.state.value,
        "uploadedImages": result.uploaded_count,
        "warnings": result.warnings,
    }), 201


@api.route("/quizzes", methods=["GET"])
def list_quizzes():
    return jsonify(to_jsonable(_services().quizzes.list()))


@api.route("/quizzes/<quiz_id>", methods=["GET"])
def get_quiz(quiz_id: str):
    return jsonify(to_jsonable(_services().quizzes.get(quiz_id)))


@api.route("/quizzes/<quiz_id>", methods=["PUT"])
def update_quiz(quiz_id: str):
    """Full replacement, or a status change when the body is {status}."""
    data = _json_body()
    result = _services().quizzes.update(quiz_id, data)
    message = (
        "Quiz status updated successfully" if is_status_only(data)
        else "Quiz updated successfully"
    )
    return jsonify({
        "message": message,
        "quizId": result.quiz_id,
        "state": result.state.value,
        "uploadedImages": result.uploaded_count,
        "removedImages": result.cleanup_count,
        "warnings": result.warnings,
    })


@api.route("/quizzes/<quiz_id>", methods=["DELETE"])
def delete_quiz(quiz_id: str):
    result = _services().quizzes.delete(quiz_id)
    return jsonify({
        "message": "Quiz deleted successfully",
        "quizId": result.quiz_id,
        "removedImages": result.cleanup_count,
        "warnings": result.warnings,
    })


# ─── Taxonomy ────────────────────────────────────────────────────────────────


@api.route(TAXONOMY_ROUTE, methods=["GET"])
def list_taxonomy(collection: str):
    return jsonify(to_jsonable(_services().taxonomy[collection].list()))


@api.route(TAXONOMY_ROUTE, methods=["POST"])
def create_taxonomy(collection: str):
    data = _json_body()
    name = data.get("name")
    if name is None and collection == "exams":
        name = data.get("examName")
    service = _services().taxonomy[collection]
    item = service.create(name)
    return jsonify({
        "message": f"{service.label} created successfully",
        "id": item["_id"],
        "item": to_jsonable(item),
    }), 201


@api.route(f"{TAXONOMY_ROUTE}/<item_id>", methods=["GET"])
def get_taxonomy(collection: str, item_id: str):
    return jsonify(to_jsonable(_services().taxonomy[collection].get(item_id)))


@api.route(f"{TAXONOMY_ROUTE}/<item_id>", methods=["PATCH", "PUT"])
def update_taxonomy(collection: str, item_id: str):
    data = _json_body()
    service = _services().taxonomy[collection]
    if request.method == "PUT" and "quizId" in data and not {"name", "examName"} & set(data):
        added = service.associate_quiz(item_id, data["quizId"])
        message = (
            f"Quiz associated with {service.label.lower()} successfully" if added
            else f"Quiz already associated with this {service.label.lower()}."
        )
        return jsonify({"message": message, "id": item_id})

    name = data.get("name")
    if name is None and collection == "exams":
        name = data.get("examName")
    item = service.rename(item_id, name)
    return jsonify({
        "message": f"{service.label} updated successfully",
        "item": to_jsonable(item),
    })


@api.route(f"{TAXONOMY_ROUTE}/<item_id>", methods=["DELETE"])
def delete_taxonomy(collection: str, item_id: str):
    service = _services().taxonomy[collection]
    service.delete(item_id)
    return jsonify({"message": f"{service.label} deleted successfully"})


# ─── Local Images ────────────────────────────────────────────────────────────


@api.route("/uploads/<path:filename>")
def serve_uploads(filename):
    """Serve images written by the local asset store."""
    store = _services().store
    if not isinstance(store, LocalAssetStore):
        abort(404)
    return send_from_directory(str(store.root), filename)


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
    config: Optional[Union[dict, ServiceConfig]] = None,
):
    """Start the microservice server."""
    app = create_app(config)
    logger.info(f"Serving quiz bank API on http://{host}:{port}")
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    run_server(debug=True)
