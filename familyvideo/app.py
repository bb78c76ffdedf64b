"""Flask entrypoint for the family video catalog."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from flask import (
    Flask,
    Response,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from familyvideo.config import Settings, ensure_dirs, get_paths, load_settings
from familyvideo.db import (
    create_job,
    get_job,
    init_db,
    list_active_payloads,
    serialize_job,
)
from familyvideo.errors import (
    FamilyVideoError,
    NotFoundError,
    ToolUnavailableError,
    ValidationError,
    classify_exception,
)
from familyvideo.logging_setup import setup_logging
from familyvideo.services import dvd, media
from familyvideo.services.jellyfin import create_jellyfin_client
from familyvideo.services.jobs import enqueue_job
from familyvideo.services.upload import (
    SUPPORTED_VIDEO_TYPES,
    random_token,
    sanitize_filename,
    save_uploaded_video,
)
from familyvideo.services.videos import (
    list_videos,
    load_metadata,
    now_playing,
    save_metadata,
)

FILTER_OPTIONS = ("untagged", "tagged", "all")
THUMBNAIL_CACHE_SECONDS = 24 * 60 * 60


def _success(data: Any, message: str = "", status: int = 200):
    return jsonify({"data": data, "message": message}), status


def _failure(status: int, label: str, details: str):
    return jsonify({"error": label, "details": details}), status


def _form_metadata(form) -> dict[str, Any]:
    """Convert the tag form into the JSON shape the metadata API accepts."""

    def _collect(key: str) -> list[str]:
        # Checkbox values are kept whole; only the free-text field is comma separated.
        values = form.getlist(key)
        for raw in form.getlist(f"{key}_other"):
            values.extend(raw.split(","))
        return values

    rating_raw = form.get("rating", "").strip()
    rating: Any = None
    if rating_raw:
        rating = int(rating_raw) if rating_raw.lstrip("-").isdigit() else rating_raw
    return {
        "title": form.get("title", ""),
        "date": form.get("date", "").strip() or None,
        "people": _collect("people"),
        "tags": _collect("tags"),
        "rating": rating,
        "description": form.get("description", ""),
    }


def create_app(
    settings: Settings | None = None,
    jellyfin=None,
    configure_logging: bool = True,
) -> Flask:
    """Application factory for the family video catalog."""

    settings = settings or load_settings()
    paths = ensure_dirs(get_paths(settings.data_dir))
    if configure_logging:
        setup_logging(paths.logs_dir)
    init_db(paths.db_path)
    owned = {
        payload.get("stagedPath") for payload in list_active_payloads(paths.db_path)
    }
    dvd.remove_orphaned_staging(settings.media_path, paths.upload_dir, owned)
    jellyfin = jellyfin or create_jellyfin_client(settings)

    base_dir = Path(__file__).resolve().parent
    app = Flask(
        __name__,
        template_folder=str(base_dir / "web" / "templates"),
    )
    app.secret_key = settings.secret_key
    app.config["MAX_CONTENT_LENGTH"] = max(
        settings.max_upload_size_bytes, settings.max_dvd_upload_size_bytes
    )
    app.config["FAMILYVIDEO_SETTINGS"] = settings
    app.extensions["jellyfin"] = jellyfin

    def _stage_upload(file_storage) -> Path:
        staged = paths.upload_dir / f"{random_token(12)}.part"
        file_storage.save(staged)
        return staged

    def _require_dvd_tools() -> None:
        if not media.dvd_tools_available():
            raise ToolUnavailableError(
                "Server is missing required tools (lsdvd, ffmpeg, unzip) for DVD processing."
            )

    def _start_job(job_type: str, payload: dict, job_callable):
        job_id = create_job(paths.db_path, job_type, payload)
        enqueue_job(paths.db_path, job_id, job_callable)
        return _success(
            serialize_job(get_job(paths.db_path, job_id)),
            "DVD extraction started",
            202,
        )

    @app.after_request
    def add_cors_headers(response: Response) -> Response:
        response.headers["Access-Control-Allow-Origin"] = settings.cors_origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        response.headers["Vary"] = "Origin"
        return response

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(exc: RequestEntityTooLarge):
        logging.warning(
            "Upload rejected as too large",
            extra={"event": "upload_too_large", "context": {"path": request.path}},
        )
        return _failure(
            413,
            "File too large",
            f"Maximum upload size is {settings.max_dvd_upload_size_mb}MB",
        )

    @app.errorhandler(Exception)
    def handle_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        status, label, details = classify_exception(exc)
        context = {"path": request.path, "status": status, "error": label, "details": details}
        if status >= 500 and not isinstance(exc, FamilyVideoError):
            logging.exception(
                "Unhandled error", extra={"event": "request_failed", "context": context}
            )
        else:
            logging.warning(
                "Request failed", extra={"event": "request_failed", "context": context}
            )
        return _failure(status, label, details)

    @app.route("/videos")
    def api_videos():
        """Return every video with its tagged flag."""

        videos = list_videos(jellyfin, settings)
        return _success(
            [video.to_dict() for video in videos],
            f"Retrieved {len(videos)} videos from Jellyfin",
        )

    @app.route("/videos/config")
    def api_videos_config():
        return _success(
            {
                "jellyfinUrl": settings.jellyfin_url,
                "people": list(settings.preset_people),
                "tags": list(settings.preset_tags),
            }
        )

    @app.route("/videos/now-playing")
    def api_now_playing():
        playing = now_playing(jellyfin, settings)
        if playing is None:
            return _success(None, "Nothing playing")
        return _success(playing.to_dict(), f"Now playing {playing.name}")

    @app.route("/videos/<item_id>/metadata")
    def api_get_metadata(item_id: str):
        metadata = load_metadata(jellyfin, settings, item_id)
        if metadata is None:
            return _success(None, "No metadata saved for this video")
        return _success(metadata.to_dict())

    @app.route("/videos/<item_id>/metadata", methods=["POST"])
    def api_save_metadata(item_id: str):
        """Write the NFO sidecar and push the metadata into Jellyfin."""

        payload = request.get_json(silent=True)
        if payload is None:
            raise ValidationError("Request body must be JSON")
        video, synced = save_metadata(jellyfin, settings, item_id, payload)
        message = "Metadata saved and synced to Jellyfin"
        if not synced:
            message = "Metadata saved; Jellyfin will pick it up on the next library scan"
        return _success(video.to_dict(), message)

    @app.route("/videos/<item_id>/thumbnail")
    def api_thumbnail(item_id: str):
        """Proxy the Jellyfin thumbnail so the API key stays on the server."""

        image = jellyfin.get_thumbnail_image(item_id)
        if not image:
            return _failure(404, "Not found", "Thumbnail not available")
        response = Response(image, mimetype="image/jpeg")
        response.headers["Cache-Control"] = f"public, max-age={THUMBNAIL_CACHE_SECONDS}"
        return response

    @app.route("/upload/video", methods=["POST"])
    def api_upload_video():
        file = request.files.get("file")
        if file is None or not file.filename:
            raise ValidationError("No file provided")
        staged = _stage_upload(file)
        result = save_uploaded_video(
            staged, file.filename, file.mimetype, settings, jellyfin
        )
        return _success(result.to_dict(), f"Uploaded {result.filename}", 201)

    @app.route("/upload/dvd", methods=["POST"])
    def api_upload_dvd():
        """Stage a VIDEO_TS ZIP and extract its chapters in the background."""

        _require_dvd_tools()
        file = request.files.get("file")
        if file is None or not file.filename:
            raise ValidationError("No file provided")
        if not file.filename.lower().endswith(".zip"):
            raise ValidationError("Please upload a ZIP file containing the VIDEO_TS folder")

        staged = _stage_upload(file)
        if staged.stat().st_size > settings.max_dvd_upload_size_bytes:
            staged.unlink(missing_ok=True)
            raise ValidationError(
                f"File too large. Maximum size: {settings.max_dvd_upload_size_mb}MB"
            )
        original_name = file.filename

        def run(progress) -> dict:
            files = dvd.process_dvd_zip(
                staged,
                original_name,
                settings,
                jellyfin,
                dvd.job_progress_reporter(progress),
            )
            return {
                "files": files,
                "message": f"Extracted {len(files)} chapters from DVD",
            }

        return _start_job(
            "dvd_zip", {"filename": original_name, "stagedPath": str(staged)}, run
        )

    @app.route("/upload/dvd-folder", methods=["POST"])
    def api_upload_dvd_folder():
        """Stage the files of a VIDEO_TS folder and extract in the background."""

        _require_dvd_tools()
        files = request.files.getlist("files") or request.files.getlist("files[]")
        files = [file for file in files if file.filename]
        if not files:
            raise ValidationError("No files provided")
        folder_name = request.form.get("folderName", "")

        staging_dir = dvd.make_staging_dir(settings, "folder")
        try:
            video_ts = staging_dir / dvd.VIDEO_TS
            video_ts.mkdir()
            total_size = 0
            for file in files:
                target = video_ts / sanitize_filename(file.filename)
                file.save(target)
                total_size += target.stat().st_size
                if total_size > settings.max_dvd_upload_size_bytes:
                    raise ValidationError(
                        f"Folder too large. Maximum size: {settings.max_dvd_upload_size_mb}MB"
                    )
        except Exception:
            dvd.remove_tree(staging_dir)
            raise

        def run(progress) -> dict:
            extracted = dvd.process_dvd_folder(
                staging_dir,
                folder_name,
                settings,
                jellyfin,
                dvd.job_progress_reporter(progress),
            )
            return {
                "files": extracted,
                "message": f"Extracted {len(extracted)} chapters from DVD",
            }

        return _start_job(
            "dvd_folder",
            {
                "folderName": folder_name,
                "fileCount": len(files),
                "stagedPath": str(staging_dir),
            },
            run,
        )

    @app.route("/upload/config")
    def api_upload_config():
        return _success(
            {
                "maxSizeMb": settings.max_upload_size_mb,
                "maxDvdSizeMb": settings.max_dvd_upload_size_mb,
                "supportedTypes": list(SUPPORTED_VIDEO_TYPES),
                "dvdToolsAvailable": media.dvd_tools_available(),
            }
        )

    @app.route("/jobs/<int:job_id>")
    def api_job_status(job_id: int):
        """Return JSON status for a background job."""

        job = get_job(paths.db_path, job_id)
        if not job:
            raise NotFoundError(f"Job {job_id} not found")
        return _success(serialize_job(job))

    @app.route("/")
    def library() -> str:
        """Render the library list."""

        selected = request.args.get("filter", "untagged")
        if selected not in FILTER_OPTIONS:
            selected = "untagged"
        error = None
        try:
            videos = list_videos(jellyfin, settings)
        except FamilyVideoError as exc:
            videos = []
            error = f"{exc.label}: {exc.details}"
        counts = {
            "all": len(videos),
            "tagged": sum(1 for video in videos if video.is_tagged),
        }
        counts["untagged"] = counts["all"] - counts["tagged"]
        if selected == "tagged":
            videos = [video for video in videos if video.is_tagged]
        elif selected == "untagged":
            videos = [video for video in videos if not video.is_tagged]
        return render_template(
            "library.html",
            videos=videos,
            counts=counts,
            selected=selected,
            filters=FILTER_OPTIONS,
            error=error,
        )

    @app.route("/library/<item_id>/tag", methods=["GET", "POST"])
    def tag_video(item_id: str):
        """Render and handle the tagging form for one video."""

        item = jellyfin.get_item(item_id)
        if not item:
            return ("Video not found", 404)

        if request.method == "POST":
            payload = _form_metadata(request.form)
            try:
                _, synced = save_metadata(jellyfin, settings, item_id, payload)
            except ValidationError as exc:
                return (
                    render_template(
                        "tag.html",
                        item=item,
                        metadata=payload,
                        settings=settings,
                        error=exc.details,
                    ),
                    400,
                )
            flash(
                "Metadata saved."
                if synced
                else "Metadata saved. Jellyfin will pick it up on the next scan."
            )
            return redirect(url_for("library"))

        metadata = load_metadata(jellyfin, settings, item_id)
        return render_template(
            "tag.html",
            item=item,
            metadata=metadata.to_dict() if metadata else {},
            settings=settings,
            error=None,
        )

    @app.route("/library/upload")
    def upload_page() -> str:
        return render_template(
            "upload.html",
            settings=settings,
            supported_types=SUPPORTED_VIDEO_TYPES,
            dvd_tools_available=media.dvd_tools_available(),
        )

    @app.route("/library/jobs/<int:job_id>")
    def job_watch(job_id: int):
        """Render a progress page for a background job."""

        job = get_job(paths.db_path, job_id)
        if not job:
            return ("Job not found", 404)
        return render_template(
            "job_watch.html", job_id=job_id, job=serialize_job(job)
        )

    return app


if __name__ == "__main__":
    application = create_app()
    application.run(
        host="0.0.0.0",
        port=application.config["FAMILYVIDEO_SETTINGS"].port,
        threaded=True,
    )
