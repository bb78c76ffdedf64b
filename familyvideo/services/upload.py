"""Upload helpers: filename hygiene, validation and safe placement in the media root."""

from __future__ import annotations

import errno
import logging
import mimetypes
import os
import re
import secrets
import shutil
import string
import time
from datetime import date
from pathlib import Path

from familyvideo.errors import ConflictError, ValidationError
from familyvideo.models import UploadResult
from familyvideo.services.jobs import fire_and_forget

logger = logging.getLogger(__name__)

SUPPORTED_VIDEO_TYPES = (
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "video/mpeg",
    "video/webm",
)
SUPPORTED_TYPE_LABELS = "MP4, MOV, AVI, MKV, MPEG, WebM"

_EXTENSION_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".mpg": "video/mpeg",
    ".mpeg": "video/mpeg",
    ".webm": "video/webm",
}
_GENERIC_TYPES = {"", "application/octet-stream", "binary/octet-stream"}
_UNSAFE_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_TOKEN_ALPHABET = string.ascii_lowercase + string.digits
# Filesystems without hard links report one of these from link().
_NO_LINK_ERRNOS = {errno.EPERM, errno.EOPNOTSUPP, errno.ENOTSUP, errno.EMLINK, errno.ENOSYS}


def format_bytes(size_bytes: float) -> str:
    """Format bytes into a friendly string."""

    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024:
            return f"{size_bytes:.0f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.0f} PB"


def random_token(length: int = 6) -> str:
    """Return a short lowercase alphanumeric token."""

    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def sanitize_filename(name: str) -> str:
    """Strip directory components and replace characters unsafe in filenames."""

    last = re.split(r"[\\/]", name)[-1]
    cleaned = _UNSAFE_CHARS_RE.sub("_", last).strip()
    if cleaned in {"", ".", ".."}:
        return "upload"
    return cleaned


def generate_unique_name(name: str, today: date | None = None) -> str:
    """Return `YYYY-MM-DD_<token>_<name>` for a client filename."""

    base, ext = os.path.splitext(sanitize_filename(name))
    stamp = (today or date.today()).isoformat()
    return f"{stamp}_{random_token()}_{base}{ext}"


def resolve_mime_type(filename: str, mimetype: str | None) -> str:
    """Return the client MIME type, guessing from the extension when it is generic."""

    cleaned = (mimetype or "").split(";")[0].strip().lower()
    if cleaned not in _GENERIC_TYPES:
        return cleaned
    ext = os.path.splitext(filename)[1].lower()
    guessed = _EXTENSION_TYPES.get(ext) or mimetypes.guess_type(filename)[0]
    return guessed or cleaned or "application/octet-stream"


def validate_video_file(filename: str, mimetype: str | None, size: int, settings) -> str:
    """Validate an uploaded video and return its effective MIME type.

    Raises:
        ValidationError: for missing files, unsupported types or oversize uploads.
    """

    if not filename:
        raise ValidationError("No file provided")
    resolved = resolve_mime_type(filename, mimetype)
    if resolved not in SUPPORTED_VIDEO_TYPES:
        raise ValidationError(
            f"Unsupported file type: {resolved}. Supported types: {SUPPORTED_TYPE_LABELS}"
        )
    if size > settings.max_upload_size_bytes:
        raise ValidationError(
            f"File too large: {round(size / (1024 * 1024))}MB. "
            f"Maximum size: {settings.max_upload_size_mb}MB"
        )
    return resolved


def move_file(src: Path, dst: Path) -> None:
    """Rename a file, copying across filesystems when rename cannot."""

    try:
        os.rename(src, dst)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        shutil.copy2(src, dst)
        os.unlink(src)


def _claim_path(temp_path: Path, final_path: Path) -> bool:
    """Give temp_path the final name unless that name is taken.

    Returns False on a collision; an existing file is never replaced.
    """

    try:
        os.link(temp_path, final_path)
    except FileExistsError:
        return False
    except OSError as exc:
        if exc.errno not in _NO_LINK_ERRNOS:
            raise
        # Reserve the name atomically, then swap the upload onto the placeholder.
        try:
            fd = os.open(final_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        os.close(fd)
        try:
            os.replace(temp_path, final_path)
        except OSError:
            final_path.unlink(missing_ok=True)
            raise
        return True
    os.unlink(temp_path)
    return True


def _suffixed(filename: str) -> str:
    base, ext = os.path.splitext(filename)
    return f"{base}_{int(time.time() * 1000)}{ext}"


def save_uploaded_video(
    source: Path,
    original_name: str,
    mimetype: str | None,
    settings,
    jellyfin=None,
    today: date | None = None,
) -> UploadResult:
    """Validate a staged upload and place it in the media root under a unique name."""

    try:
        size = source.stat().st_size
        resolved_type = validate_video_file(original_name, mimetype, size, settings)
    except (OSError, ValidationError):
        source.unlink(missing_ok=True)
        raise

    media_root = settings.media_path
    filename = generate_unique_name(original_name, today)
    temp_path = media_root / f".{filename}.tmp.{random_token(10)}"
    try:
        media_root.mkdir(parents=True, exist_ok=True)
        move_file(source, temp_path)
        if not _claim_path(temp_path, media_root / filename):
            logger.info(
                "Upload name collision, retrying with suffix",
                extra={"event": "upload_name_conflict", "context": {"filename": filename}},
            )
            filename = _suffixed(filename)
            if not _claim_path(temp_path, media_root / filename):
                raise ConflictError(f"Could not find a free filename for {original_name}")
    except Exception:
        temp_path.unlink(missing_ok=True)
        source.unlink(missing_ok=True)
        raise

    logger.info(
        "Uploaded video",
        extra={
            "event": "video_uploaded",
            "context": {"filename": filename, "size": format_bytes(size), "mime_type": resolved_type},
        },
    )
    if jellyfin is not None:
        fire_and_forget(jellyfin.refresh_home_videos_library)
    return UploadResult(filename=filename, size=size, mime_type=resolved_type)
