"""DVD (VIDEO_TS) chapter extraction for ZIP and folder uploads."""

from __future__ import annotations

import logging
import os
import posixpath
import re
import shutil
import stat
import tempfile
import zipfile
from datetime import date
from pathlib import Path
from typing import Callable

from familyvideo.errors import ExtractionError, FamilyVideoError, ValidationError
from familyvideo.models import DvdExtractionProgress
from familyvideo.services import media
from familyvideo.services.jobs import ProgressCallback, fire_and_forget
from familyvideo.services.upload import format_bytes, random_token, sanitize_filename

logger = logging.getLogger(__name__)

MIN_CHAPTER_SECONDS = 3
TEMP_DIR_PREFIX = ".tmp_dvd_"
VIDEO_TS = "VIDEO_TS"

ExtractionProgress = Callable[[DvdExtractionProgress], None]

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def _emit(progress: ExtractionProgress | None, state: DvdExtractionProgress) -> None:
    if progress:
        progress(state)


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def is_dvd_directory(path: Path) -> bool:
    """True when the directory holds at least one IFO and one title VOB."""

    if not path.is_dir():
        return False
    names = [entry.name for entry in path.iterdir() if entry.is_file()]
    has_ifo = any(media.DVD_IFO_RE.search(name) for name in names)
    has_vob = any(media.is_title_vob(name) for name in names)
    return has_ifo and has_vob


def find_video_ts_parent(root: Path) -> Path | None:
    """Depth-first search for a VIDEO_TS directory; returns its parent."""

    try:
        entries = sorted(root.iterdir(), key=lambda entry: entry.name)
    except OSError:
        return None
    for entry in entries:
        if entry.is_symlink() or not entry.is_dir():
            continue
        if entry.name.upper() == VIDEO_TS:
            return root
        found = find_video_ts_parent(entry)
        if found is not None:
            return found
    return None


def _video_ts_dir(dvd_path: Path) -> Path:
    for entry in sorted(dvd_path.iterdir(), key=lambda item: item.name):
        if entry.is_dir() and entry.name.upper() == VIDEO_TS:
            return entry
    raise ValidationError(f"No {VIDEO_TS} folder found in {dvd_path.name}")


def job_progress_reporter(callback: ProgressCallback) -> ExtractionProgress:
    """Translate extraction states into job percent/phase/detail updates."""

    last_percent = 0

    def _report(state: DvdExtractionProgress) -> None:
        nonlocal last_percent
        if state.status == "analyzing":
            last_percent = 5
            callback(last_percent, state.status, "Analyzing DVD structure")
        elif state.status == "extracting":
            total = state.total_chapters or 1
            done = max(0, (state.current_chapter or 1) - 1)
            last_percent = 10 + int(85 * min(done, total) / total)
            detail = f"Chapter {state.current_chapter or 0} of {total}"
            if state.current_filename:
                detail = f"{detail}: {state.current_filename}"
            callback(last_percent, state.status, detail)
        elif state.status == "complete":
            last_percent = 100
            callback(
                last_percent,
                state.status,
                f"Extracted {len(state.extracted_files)} chapters",
            )
        else:
            callback(last_percent, state.status, state.error or "")

    return _report


def extract_dvd_chapters(
    dvd_path: Path,
    output_prefix: str,
    settings,
    jellyfin=None,
    progress: ExtractionProgress | None = None,
    today: date | None = None,
) -> list[str]:
    """Extract each chapter of a DVD title into its own MP4 in the media root.

    Chapters shorter than three seconds are skipped and a failing chapter does
    not stop the run.

    Returns:
        Filenames of the chapters written.

    Raises:
        ValidationError: when the DVD has no chapters or title VOBs.
        ExtractionError: when not a single chapter could be written.
    """

    try:
        return _extract(dvd_path, output_prefix, settings, jellyfin, progress, today)
    except FamilyVideoError as exc:
        _emit(progress, DvdExtractionProgress(status="error", error=exc.details))
        raise


def _extract(
    dvd_path: Path,
    output_prefix: str,
    settings,
    jellyfin,
    progress: ExtractionProgress | None,
    today: date | None,
) -> list[str]:
    video_ts = _video_ts_dir(dvd_path)
    _emit(progress, DvdExtractionProgress(status="analyzing"))

    table = media.read_dvd_chapters(dvd_path)
    chapters = table.chapters
    if not chapters:
        raise ValidationError("No chapters found in DVD")
    total = len(chapters)
    _emit(
        progress,
        DvdExtractionProgress(status="extracting", total_chapters=total, current_chapter=0),
    )

    vobs = media.list_title_vobs(video_ts, table.title_set)
    if not vobs:
        raise ValidationError(f"No VOB files found in {VIDEO_TS}")
    concat_input = media.build_concat_input(vobs)

    batch = f"{(today or date.today()).isoformat()}_{random_token()}"
    extracted: list[str] = []
    last_os_error: OSError | None = None
    for chapter in chapters:
        filename = f"{batch}_{output_prefix}_ch{chapter.index:02d}.mp4"
        _emit(
            progress,
            DvdExtractionProgress(
                status="extracting",
                total_chapters=total,
                current_chapter=chapter.index,
                current_filename=filename,
                extracted_files=list(extracted),
            ),
        )
        if chapter.duration < MIN_CHAPTER_SECONDS:
            logger.warning(
                "Skipping short chapter",
                extra={
                    "event": "dvd_chapter_skipped",
                    "context": {"chapter": chapter.index, "duration": chapter.duration},
                },
            )
            continue

        try:
            result = media.extract_chapter(
                concat_input, chapter, total, settings.media_path / filename
            )
        except OSError as exc:
            last_os_error = exc
            logger.error(
                "Chapter extraction failed",
                extra={
                    "event": "dvd_chapter_failed",
                    "context": {"chapter": chapter.index, "error": str(exc)},
                },
            )
            continue

        if result.status != "exported":
            logger.error(
                "Chapter extraction failed",
                extra={
                    "event": "dvd_chapter_failed",
                    "context": {
                        "chapter": chapter.index,
                        "status": result.status,
                        "error": result.message,
                    },
                },
            )
            continue
        extracted.append(filename)
        logger.info(
            "Extracted chapter",
            extra={
                "event": "dvd_chapter_extracted",
                "context": {
                    "chapter": chapter.index,
                    "filename": filename,
                    "size": format_bytes(result.size_bytes),
                },
            },
        )

    if not extracted:
        if last_os_error is not None:
            raise last_os_error
        raise ExtractionError("Failed to extract any chapters from DVD")

    _emit(
        progress,
        DvdExtractionProgress(
            status="complete", total_chapters=total, extracted_files=list(extracted)
        ),
    )
    logger.info(
        "DVD extraction complete",
        extra={
            "event": "dvd_extraction_complete",
            "context": {"extracted": len(extracted), "chapters": total},
        },
    )
    if jellyfin is not None:
        fire_and_forget(jellyfin.refresh_home_videos_library)
    return extracted


def _member_is_symlink(info: zipfile.ZipInfo) -> bool:
    return stat.S_ISLNK(info.external_attr >> 16)


def validate_zip_members(zip_path: Path, destination: Path) -> None:
    """Reject archives whose members would land outside destination.

    Raises:
        ValidationError: for unreadable archives, absolute or escaping member
            paths, and symlink members.
    """

    root = os.path.realpath(destination)
    try:
        with zipfile.ZipFile(zip_path) as archive:
            members = archive.infolist()
    except (zipfile.BadZipFile, OSError) as exc:
        raise ValidationError(f"Invalid ZIP file: {exc}") from exc

    for info in members:
        name = info.filename.replace("\\", "/")
        normalized = posixpath.normpath(name)
        unsafe = (
            name.startswith("/")
            or _DRIVE_RE.match(name) is not None
            or normalized == ".."
            or normalized.startswith("../")
        )
        if not unsafe:
            target = os.path.realpath(os.path.join(root, normalized))
            unsafe = os.path.commonpath([root, target]) != root
        if unsafe:
            logger.error(
                "Path traversal attempt detected in ZIP",
                extra={"event": "zip_traversal", "context": {"member": info.filename}},
            )
            raise ValidationError(
                f"ZIP file contains path traversal attempt: {info.filename}"
            )
        if _member_is_symlink(info):
            raise ValidationError(f"ZIP file contains a symbolic link: {info.filename}")


def verify_extracted_tree(root: Path) -> None:
    """Check that nothing under root (symlinks included) resolves outside it."""

    resolved_root = root.resolve()
    for current, dirs, files in os.walk(root, followlinks=False):
        for name in dirs + files:
            entry = Path(current) / name
            if not _is_within(entry.resolve(), resolved_root):
                logger.error(
                    "Extracted entry escapes the extraction directory",
                    extra={"event": "zip_traversal", "context": {"entry": str(entry)}},
                )
                raise ValidationError(f"ZIP file contains path traversal attempt: {name}")


def remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning(
            "Failed to clean up temp directory",
            extra={"event": "temp_cleanup_failed", "context": {"path": str(path), "error": str(exc)}},
        )


def make_staging_dir(settings, kind: str = "zip") -> Path:
    """Create a private temp directory inside the media root."""

    settings.media_path.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=f"{TEMP_DIR_PREFIX}{kind}_", dir=settings.media_path))


def remove_orphaned_staging(media_root: Path, upload_dir: Path, owned: set[str]) -> list[Path]:
    """Delete staged uploads and DVD temp dirs that no active job owns.

    Jobs interrupted by a restart never reach their cleanup, so their
    ``*.part`` archives and ``.tmp_dvd_*`` directories are swept at startup.
    """

    candidates: list[Path] = []
    if upload_dir.is_dir():
        candidates.extend(upload_dir.glob("*.part"))
    if media_root.is_dir():
        candidates.extend(media_root.glob(f"{TEMP_DIR_PREFIX}*"))

    removed: list[Path] = []
    for path in sorted(candidates):
        if str(path) in owned:
            continue
        if path.is_dir() and not path.is_symlink():
            remove_tree(path)
        else:
            path.unlink(missing_ok=True)
        removed.append(path)
    if removed:
        logger.info(
            "Removed staging left by interrupted jobs",
            extra={
                "event": "staging_swept",
                "context": {"count": len(removed), "paths": [str(path) for path in removed]},
            },
        )
    return removed


def process_dvd_zip(
    zip_path: Path,
    original_name: str,
    settings,
    jellyfin=None,
    progress: ExtractionProgress | None = None,
) -> list[str]:
    """Unpack a ZIP holding a VIDEO_TS folder and extract its chapters.

    The archive and its temp directory are removed whatever the outcome.
    """

    if not original_name.lower().endswith(".zip"):
        zip_path.unlink(missing_ok=True)
        raise ValidationError("Please upload a ZIP file containing the VIDEO_TS folder")

    temp_dir = make_staging_dir(settings, "zip")
    try:
        validate_zip_members(zip_path, temp_dir)
        logger.info(
            "Extracting DVD archive",
            extra={"event": "dvd_zip_extract", "context": {"archive": original_name}},
        )
        media.unzip_archive(zip_path, temp_dir)
        verify_extracted_tree(temp_dir)

        dvd_path = find_video_ts_parent(temp_dir)
        if dvd_path is None:
            raise ValidationError(f"No {VIDEO_TS} folder found in ZIP")

        prefix = Path(sanitize_filename(original_name)).stem or "DVD"
        return extract_dvd_chapters(dvd_path, prefix, settings, jellyfin, progress)
    finally:
        remove_tree(temp_dir)
        zip_path.unlink(missing_ok=True)


def folder_output_prefix(folder_name: str) -> str:
    """Derive the output prefix from an uploaded folder's name."""

    trimmed = re.sub(VIDEO_TS, "", folder_name or "", count=1, flags=re.IGNORECASE)
    trimmed = re.sub(r"[_\s]+$", "", trimmed)
    return sanitize_filename(trimmed or "DVD")


def process_dvd_folder(
    staging_dir: Path,
    folder_name: str,
    settings,
    jellyfin=None,
    progress: ExtractionProgress | None = None,
) -> list[str]:
    """Extract chapters from files staged flat into staging_dir/VIDEO_TS.

    The staging directory is removed whatever the outcome.
    """

    try:
        video_ts = staging_dir / VIDEO_TS
        if not is_dvd_directory(video_ts):
            raise ValidationError(
                "Invalid DVD folder structure: missing required VOB/IFO files"
            )
        return extract_dvd_chapters(
            staging_dir, folder_output_prefix(folder_name), settings, jellyfin, progress
        )
    finally:
        remove_tree(staging_dir)
