"""External media tools: lsdvd chapter tables, ffmpeg chapter cuts and unzip.

Every tool is invoked with an argument list and a timeout, never through a
shell.
"""

from __future__ import annotations

import ast
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from familyvideo.errors import ToolUnavailableError, ValidationError
from familyvideo.models import DvdChapter

logger = logging.getLogger(__name__)

LSDVD_TIMEOUT = 30
FFMPEG_CHAPTER_TIMEOUT = 300
UNZIP_TIMEOUT = 300
MIN_OUTPUT_BYTES = 1000

DVD_IFO_RE = re.compile(r"\.ifo$", re.IGNORECASE)
DVD_VOB_RE = re.compile(r"^vts_(\d+)_[1-9]\.vob$", re.IGNORECASE)

_LSDVD_PREFIX_RE = re.compile(r"^\s*lsdvd\s*=\s*")
_TRACK_RE = re.compile(
    r"'ix'\s*:\s*1,\s*'length'\s*:\s*([\d.]+)(.*?)'chapter'\s*:\s*\[(.*?)\]",
    re.DOTALL,
)
_CHAPTER_RE = re.compile(r"'ix'\s*:\s*(\d+),\s*'length'\s*:\s*([\d.]+)")
_VTS_RE = re.compile(r"'vts'\s*:\s*(\d+)")


@dataclass(frozen=True)
class ChapterTable:
    """Chapters of the title chosen for extraction, plus its title set."""

    chapters: list[DvdChapter]
    title_set: int | None = None


@dataclass(frozen=True)
class ChapterResult:
    """Result of a single ffmpeg chapter cut."""

    status: str
    message: str
    size_bytes: int = 0


def _tool_path(name: str) -> str:
    path = shutil.which(name)
    if not path:
        raise ToolUnavailableError(
            f"{name} is not installed. Server is missing required tools "
            "(lsdvd, ffmpeg, unzip) for DVD processing."
        )
    return path


def dvd_tools_available() -> bool:
    """Return True if every tool DVD processing needs is on the PATH."""

    return all(shutil.which(tool) for tool in ("lsdvd", "ffmpeg", "unzip"))


def _run_subprocess(args: list[str], timeout: int = 30) -> subprocess.CompletedProcess:
    """Run a subprocess command with logging and a timeout."""

    logger.info(
        "Running subprocess",
        extra={
            "event": "subprocess_start",
            "context": {"command": args, "timeout_seconds": timeout},
        },
    )
    return subprocess.run(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def _chapters_from_lengths(entries: list[tuple[int, float]]) -> list[DvdChapter]:
    chapters: list[DvdChapter] = []
    start = 0.0
    for index, duration in entries:
        chapters.append(DvdChapter(index=index, duration=duration, start_time=start))
        start += duration
    return chapters


def _pick_track(data: dict[str, Any]) -> dict[str, Any] | None:
    tracks = data.get("track") or []
    if not tracks:
        return None
    for track in tracks:
        if track.get("ix") == 1:
            return track
    longest = data.get("longest_track")
    for track in tracks:
        if track.get("ix") == longest:
            return track
    return tracks[0]


def _parse_lsdvd_literal(stdout: str) -> ChapterTable | None:
    body = _LSDVD_PREFIX_RE.sub("", stdout.strip(), count=1)
    try:
        data = ast.literal_eval(body)
    except (SyntaxError, ValueError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    track = _pick_track(data)
    if track is None:
        return None
    entries = [
        (int(chapter["ix"]), float(chapter["length"]))
        for chapter in track.get("chapter") or []
        if "ix" in chapter and "length" in chapter
    ]
    title_set = track.get("vts")
    return ChapterTable(
        chapters=_chapters_from_lengths(entries),
        title_set=int(title_set) if title_set is not None else None,
    )


def _parse_lsdvd_regex(stdout: str) -> ChapterTable | None:
    track_match = _TRACK_RE.search(stdout)
    if not track_match:
        return None
    entries = [
        (int(index), float(length))
        for index, length in _CHAPTER_RE.findall(track_match.group(3))
    ]
    vts_match = _VTS_RE.search(track_match.group(2))
    return ChapterTable(
        chapters=_chapters_from_lengths(entries),
        title_set=int(vts_match.group(1)) if vts_match else None,
    )


def parse_lsdvd_output(stdout: str) -> ChapterTable:
    """Parse `lsdvd -x -Oy` output into a chapter table with start times.

    Raises:
        ValidationError: when no chapter information can be found.
    """

    table = _parse_lsdvd_literal(stdout) or _parse_lsdvd_regex(stdout)
    if table is None:
        raise ValidationError(
            "Failed to parse DVD structure: could not find chapter info"
        )
    return table


def read_dvd_chapters(dvd_path: Path) -> ChapterTable:
    """Run lsdvd against a DVD directory and return its chapter table."""

    lsdvd = _tool_path("lsdvd")
    try:
        result = _run_subprocess([lsdvd, "-x", "-Oy", str(dvd_path)], timeout=LSDVD_TIMEOUT)
    except subprocess.TimeoutExpired as exc:
        logger.warning(
            "DVD analysis timed out",
            extra={"event": "lsdvd_timeout", "context": {"path": str(dvd_path), "error": str(exc)}},
        )
        raise ValidationError("Failed to parse DVD structure: analysis timed out") from exc

    try:
        table = parse_lsdvd_output(result.stdout or "")
    except ValidationError:
        logger.error(
            "DVD analysis failed",
            extra={
                "event": "lsdvd_failed",
                "context": {
                    "path": str(dvd_path),
                    "returncode": result.returncode,
                    "stderr": (result.stderr or "").strip(),
                },
            },
        )
        raise
    logger.info(
        "Parsed DVD chapters",
        extra={
            "event": "dvd_chapters_parsed",
            "context": {"path": str(dvd_path), "chapters": len(table.chapters)},
        },
    )
    return table


def is_title_vob(name: str) -> bool:
    """True for title VOBs (VTS_nn_1..9.VOB); menu VOBs (_0) excluded."""

    return DVD_VOB_RE.match(name) is not None


def list_title_vobs(video_ts: Path, title_set: int | None = None) -> list[Path]:
    """Return the sorted title VOBs, narrowed to one title set when it has files."""

    vobs = sorted(
        (path for path in video_ts.iterdir() if path.is_file() and is_title_vob(path.name)),
        key=lambda path: path.name.upper(),
    )
    if title_set is None:
        return vobs
    narrowed = [path for path in vobs if int(DVD_VOB_RE.match(path.name).group(1)) == title_set]
    return narrowed or vobs


def build_concat_input(vobs: list[Path]) -> str:
    """Build ffmpeg's concat protocol input over sequential VOB files."""

    return "concat:" + "|".join(str(path) for path in vobs)


def _format_seconds(value: float) -> str:
    return f"{value:.3f}"


def build_chapter_args(
    ffmpeg: str,
    concat_input: str,
    chapter: DvdChapter,
    total_chapters: int,
    output_path: Path,
) -> list[str]:
    """Return the ffmpeg argument list for one chapter cut."""

    return [
        ffmpeg,
        "-y",
        "-hide_banner",
        "-loglevel",
        "warning",
        "-analyzeduration",
        "100M",
        "-probesize",
        "100M",
        "-i",
        concat_input,
        "-ss",
        _format_seconds(chapter.start_time),
        "-t",
        _format_seconds(chapter.duration),
        "-c:v",
        "libx264",
        "-preset",
        "fast",
        "-crf",
        "23",
        "-c:a",
        "aac",
        "-b:a",
        "192k",
        "-metadata",
        f"title=Chapter {chapter.index:02d}",
        "-metadata",
        f"track={chapter.index}/{total_chapters}",
        str(output_path),
    ]


def extract_chapter(
    concat_input: str,
    chapter: DvdChapter,
    total_chapters: int,
    output_path: Path,
) -> ChapterResult:
    """Cut and re-encode one chapter to MP4, verifying the output size."""

    ffmpeg = _tool_path("ffmpeg")
    args = build_chapter_args(ffmpeg, concat_input, chapter, total_chapters, output_path)
    try:
        result = _run_subprocess(args, timeout=FFMPEG_CHAPTER_TIMEOUT)
    except subprocess.TimeoutExpired:
        output_path.unlink(missing_ok=True)
        return ChapterResult(status="timeout", message="ffmpeg timed out")

    if result.returncode != 0:
        output_path.unlink(missing_ok=True)
        return ChapterResult(
            status="error",
            message=(result.stderr or "").strip() or f"ffmpeg exited with {result.returncode}",
        )

    try:
        size = output_path.stat().st_size
    except FileNotFoundError:
        return ChapterResult(status="error", message="ffmpeg produced no output file")
    if size <= MIN_OUTPUT_BYTES:
        output_path.unlink(missing_ok=True)
        return ChapterResult(status="invalid", message="ffmpeg produced an invalid file", size_bytes=size)
    return ChapterResult(status="exported", message="Chapter extracted", size_bytes=size)


def unzip_archive(zip_path: Path, destination: Path) -> None:
    """Extract an archive with the unzip tool.

    Raises:
        ValidationError: when unzip fails or times out.
    """

    unzip = _tool_path("unzip")
    try:
        result = _run_subprocess(
            [unzip, "-q", "-o", str(zip_path), "-d", str(destination)],
            timeout=UNZIP_TIMEOUT,
        )
    except subprocess.TimeoutExpired as exc:
        raise ValidationError("ZIP extraction timed out") from exc
    if result.returncode != 0:
        logger.warning(
            "unzip failed",
            extra={
                "event": "unzip_failed",
                "context": {
                    "path": str(zip_path),
                    "returncode": result.returncode,
                    "stderr": (result.stderr or "").strip(),
                },
            },
        )
        raise ValidationError(
            f"Failed to extract ZIP file: {(result.stderr or '').strip() or result.returncode}"
        )
