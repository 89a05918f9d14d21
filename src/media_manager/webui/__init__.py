"""Flask JSON API for uploading, browsing, editing and deleting media."""

from __future__ import annotations

import json
from typing import Any

from flask import Flask, abort, jsonify, request, send_file
from werkzeug.exceptions import HTTPException

from media_manager.catalog import record_to_payload
from media_manager.object_store import LocalObjectStore
from media_manager.pipeline import IngestError, MediaPipeline
from media_manager.status import MediaSource
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "webui"})

app = Flask(__name__)


def _get_pipeline() -> MediaPipeline:
    from media_manager.task_queue import build_pipeline

    return build_pipeline()


def _error(message: str, status: int, details: str | None = None) -> tuple[Any, int]:
    body: dict[str, Any] = {"error": message}
    if details is not None:
        body["details"] = details
    return jsonify(body), status


def _server_error(message: str, exc: Exception) -> tuple[Any, int]:
    LOGGER.error("api_error", extra={"path": request.path, "error_type": type(exc).__name__, "error": str(exc)})
    return _error(message, 500, str(exc))


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        abort(400, description=f"Query parameter {name!r} must be an integer")


@app.errorhandler(HTTPException)
def _handle_http_exception(exc: HTTPException) -> tuple[Any, int]:
    return _error(exc.description or exc.name, exc.code or 500)


@app.route("/api/upload/local", methods=["POST"])
def upload_local() -> Any:
    uploaded = request.files.get("file")
    if uploaded is None or not uploaded.filename:
        return _error("No file uploaded", 400)

    data = uploaded.read()
    filename = uploaded.filename or "image.jpg"
    mimetype = uploaded.mimetype or "image/jpeg"

    try:
        item = _get_pipeline().ingest(data, filename, mimetype, source=MediaSource.LOCAL)
    except IngestError as exc:
        return _error(str(exc), 400)
    except Exception as exc:
        return _server_error("Upload failed", exc)

    payload = record_to_payload(item)
    payload["processing"] = True
    return jsonify({"success": True, "media": payload, "message": "Upload received. Processing in background..."})


@app.route("/api/media", methods=["GET"])
def list_media() -> Any:
    page = max(1, _int_arg("page", 1))
    limit = max(1, _int_arg("limit", 20))
    order = "asc" if request.args.get("order") == "asc" else "desc"

    try:
        items = _get_pipeline().catalog.list_media(
            search=request.args.get("search") or None,
            source=request.args.get("source") or None,
            page=page,
            limit=limit,
            order=order,
        )
    except Exception as exc:
        return _server_error("Failed to fetch media", exc)

    return jsonify(
        {
            "success": True,
            "media": [record_to_payload(item) for item in items],
            "pagination": {"page": page, "limit": limit, "total": len(items)},
        }
    )


@app.route("/api/media/<media_id>", methods=["GET"])
def get_media(media_id: str) -> Any:
    item = _get_pipeline().catalog.get(media_id)
    if item is None:
        return _error("Media not found", 404)
    return jsonify({"success": True, "media": record_to_payload(item)})


@app.route("/api/media/<media_id>", methods=["PUT"])
def update_media(media_id: str) -> Any:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}

    if "tags" in body and not isinstance(body["tags"], list):
        return _error("Tags must be an array", 400)

    metadata: dict[str, Any] = {}
    if "tags" in body:
        metadata["tags"] = body["tags"]
    if "description" in body:
        metadata["description"] = body["description"]
    if "altText" in body:
        metadata["alt_text"] = body["altText"]
    if not metadata:
        return _error("No valid fields provided for update", 400)

    try:
        item = _get_pipeline().update_metadata(media_id, metadata)
    except ValueError as exc:
        return _error(str(exc), 400)
    except Exception as exc:
        return _server_error("Failed to update media", exc)

    if item is None:
        return _error("Media not found", 404)
    return jsonify({"success": True, "media": record_to_payload(item)})


@app.route("/api/media/<media_id>", methods=["DELETE"])
def delete_media(media_id: str) -> Any:
    try:
        deleted = _get_pipeline().delete(media_id)
    except Exception as exc:
        return _server_error("Failed to delete media", exc)

    if not deleted:
        return _error("Media not found", 404)
    return jsonify({"success": True, "message": "Media deleted successfully"})


@app.route("/api/media/<media_id>/status", methods=["GET"])
def media_status(media_id: str) -> Any:
    view = _get_pipeline().status(media_id)
    if view is None:
        return _error("Media not found", 404)
    return jsonify({"success": True, "media": record_to_payload(view.record), "processing": view.processing})


@app.route("/api/media/<media_id>/edit", methods=["PUT"])
def edit_media(media_id: str) -> Any:
    pipeline = _get_pipeline()
    if pipeline.catalog.get(media_id) is None:
        return _error("Media not found", 404)

    raw_tags = request.form.get("tags")
    try:
        tags = json.loads(raw_tags) if raw_tags else []
    except json.JSONDecodeError:
        return _error("Tags must be a JSON array", 400)
    if not isinstance(tags, list):
        return _error("Tags must be a JSON array", 400)

    metadata = {
        "title": request.form.get("title"),
        "description": request.form.get("description"),
        "alt_text": request.form.get("altText"),
        "tags": tags,
    }

    image: bytes | None = None
    filename: str | None = None
    mimetype: str | None = None
    edited = request.files.get("editedImage")
    if edited is not None and edited.filename:
        mimetype = edited.mimetype or "image/jpeg"
        if not mimetype.startswith("image/"):
            return _error("Only image files are allowed", 400)
        image = edited.read()
        if len(image) > pipeline.settings.web.max_upload_bytes:
            return _error("Edited image exceeds the upload limit", 400)
        filename = edited.filename

    try:
        item = pipeline.edit(media_id, metadata, image=image, filename=filename, mimetype=mimetype)
    except ValueError as exc:
        return _error(str(exc), 400)
    except Exception as exc:
        return _server_error("Edit failed", exc)

    if item is None:
        return _error("Media not found", 404)
    return jsonify({"success": True, "media": record_to_payload(item)})


@app.route("/api/search", methods=["GET"])
def search() -> Any:
    query = request.args.get("q") or ""
    tags_param = request.args.get("tags") or ""
    filter_tags = [tag.strip() for tag in tags_param.split(",") if tag.strip()]
    source = request.args.get("source") or "all"
    limit = max(1, _int_arg("limit", 20))
    offset = max(0, _int_arg("offset", 0))

    try:
        page = _get_pipeline().catalog.search(query=query, tags=filter_tags, source=source, limit=limit, offset=offset)
    except Exception as exc:
        return _server_error("Search failed", exc)

    return jsonify(
        {
            "success": True,
            "query": query,
            "tags": filter_tags,
            "source": source,
            "results": [record_to_payload(item) for item in page.items],
            "total": page.total,
            "pagination": {"limit": page.limit, "offset": page.offset, "hasMore": page.has_more},
        }
    )


@app.route("/api/tags", methods=["GET"])
def list_tags() -> Any:
    try:
        tags = _get_pipeline().catalog.all_tags()
    except Exception as exc:
        return _server_error("Failed to fetch tags", exc)
    return jsonify({"success": True, "tags": tags, "total": len(tags)})


@app.route("/files/<path:key>")
def serve_file(key: str) -> Any:
    store = _get_pipeline().store
    if not isinstance(store, LocalObjectStore):
        abort(404)
    try:
        path = store.path_for(key)
    except ValueError:
        abort(404)
    if not path.is_file():
        abort(404)
    return send_file(path)


__all__ = ["app"]
