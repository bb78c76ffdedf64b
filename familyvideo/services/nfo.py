"""NFO sidecar files: XML generation, parsing and atomic writes."""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path, PurePosixPath
from xml.sax.saxutils import escape, unescape

from familyvideo.errors import ValidationError
from familyvideo.models import VideoMetadata

logger = logging.getLogger(__name__)

HOME_VIDEO_GENRE = "Home Video"

_ESCAPE_ENTITIES = {'"': "&quot;", "'": "&apos;"}
_UNESCAPE_ENTITIES = {"&quot;": '"', "&apos;": "'"}
_RATING_RE = re.compile(r"^-?\d+")


def _escape(text: str) -> str:
    return escape(text, _ESCAPE_ENTITIES)


def _unescape(text: str) -> str:
    return unescape(text, _UNESCAPE_ENTITIES)


def generate_nfo_xml(metadata: VideoMetadata) -> str:
    """Render metadata as a Kodi/Jellyfin movie NFO document."""

    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        "<movie>",
        f"  <title>{_escape(metadata.title)}</title>",
    ]
    if metadata.date:
        lines.append(f"  <premiered>{_escape(metadata.date)}</premiered>")
        year = metadata.date.split("-")[0]
        if year:
            lines.append(f"  <year>{_escape(year)}</year>")
    if metadata.rating is not None:
        lines.append(f"  <rating>{metadata.rating}</rating>")
    if metadata.description:
        lines.append(f"  <plot>{_escape(metadata.description)}</plot>")
    for person in metadata.people:
        lines.append("  <actor>")
        lines.append(f"    <name>{_escape(person)}</name>")
        lines.append("  </actor>")
    for tag in metadata.tags:
        lines.append(f"  <tag>{_escape(tag)}</tag>")
    lines.append(f"  <genre>{HOME_VIDEO_GENRE}</genre>")
    lines.append("</movie>")
    return "\n".join(lines)


def _tag_pattern(tag: str) -> re.Pattern[str]:
    return re.compile(rf"<{tag}>([\s\S]*?)</{tag}>")


def _first(xml: str, tag: str) -> str | None:
    match = _tag_pattern(tag).search(xml)
    return _unescape(match.group(1).strip()) if match else None


def _all(xml: str, tag: str) -> list[str]:
    return [match.group(1).strip() for match in _tag_pattern(tag).finditer(xml)]


def parse_nfo_xml(xml: str) -> VideoMetadata:
    """Parse an NFO document; missing optional fields come back empty."""

    people: list[str] = []
    for block in _all(xml, "actor"):
        name = _first(block, "name")
        if name:
            people.append(name)

    rating = None
    rating_text = _first(xml, "rating")
    if rating_text:
        match = _RATING_RE.match(rating_text)
        if match:
            rating = int(match.group(0))

    return VideoMetadata(
        title=_first(xml, "title") or "",
        date=_first(xml, "premiered") or None,
        people=people,
        tags=[_unescape(tag) for tag in _all(xml, "tag")],
        rating=rating,
        description=_first(xml, "plot") or None,
    )


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def map_to_media_path(video_path: str, media_root: Path, jellyfin_prefix: str) -> Path | None:
    """Translate a Jellyfin-reported path into the local media root.

    Returns None when the path is neither under the media root nor under the
    Jellyfin-side prefix.

    Raises:
        ValidationError: when the mapped path escapes the media root.
    """

    root = media_root.resolve()
    for base in {str(media_root).rstrip("/"), str(root).rstrip("/")}:
        if video_path != base and not video_path.startswith(base + "/"):
            continue
        resolved = Path(video_path).resolve()
        if not _is_within(resolved, root):
            logger.error(
                "Path traversal attempt detected",
                extra={"event": "path_traversal", "context": {"path": video_path}},
            )
            raise ValidationError("Invalid path")
        return resolved

    prefix = jellyfin_prefix.rstrip("/") + "/"
    if jellyfin_prefix and video_path.startswith(prefix):
        relative = PurePosixPath(video_path[len(prefix):])
        resolved = (root / relative).resolve()
        if not _is_within(resolved, root):
            logger.error(
                "Path traversal attempt detected",
                extra={"event": "path_traversal", "context": {"path": video_path}},
            )
            raise ValidationError("Invalid path")
        return resolved

    return None


def _nfo_sibling(path: Path) -> Path:
    return path.with_suffix(".nfo")


def nfo_path_for(video_path: str, settings) -> Path:
    """Return the local NFO path for a Jellyfin video path.

    Raises:
        ValidationError: when the path cannot be mapped into the media root.
    """

    mapped = map_to_media_path(
        video_path, settings.media_path, settings.jellyfin_media_prefix
    )
    if mapped is None:
        logger.warning(
            "Video path is outside the media root",
            extra={"event": "path_unmapped", "context": {"path": video_path}},
        )
        raise ValidationError(f"Video path is outside the media directory: {video_path}")
    return _nfo_sibling(mapped)


def write_nfo(video_path: str, metadata: VideoMetadata, settings) -> Path:
    """Write the NFO next to the video: temp file first, then rename."""

    nfo_path = nfo_path_for(video_path, settings)
    nfo_path.parent.mkdir(parents=True, exist_ok=True)
    content = generate_nfo_xml(metadata)

    fd, temp_name = tempfile.mkstemp(
        dir=nfo_path.parent, prefix=f".{nfo_path.stem}.", suffix=".nfo.tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(temp_name, nfo_path)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise

    logger.info(
        "NFO file written",
        extra={"event": "nfo_written", "context": {"path": str(nfo_path)}},
    )
    return nfo_path


def read_nfo(video_path: str, settings) -> VideoMetadata | None:
    """Read and parse the NFO for a video, or None when absent or unreadable."""

    try:
        nfo_path = nfo_path_for(video_path, settings)
    except ValidationError:
        return None
    if not nfo_path.exists():
        return None
    try:
        content = nfo_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning(
            "Failed to read NFO",
            extra={"event": "nfo_read_failed", "context": {"path": str(nfo_path), "error": str(exc)}},
        )
        return None
    return parse_nfo_xml(content)


def is_complete(metadata: VideoMetadata) -> bool:
    """True when the metadata has a title, a date and at least one person."""

    return bool(metadata.title.strip() and metadata.date and metadata.people)


def is_tagged(video_path: str, settings) -> bool:
    """Return True if an NFO exists next to the video.

    With tagged_requires_complete set, the NFO must also be complete.
    """

    if not video_path:
        return False
    try:
        mapped = map_to_media_path(
            video_path, settings.media_path, settings.jellyfin_media_prefix
        )
    except ValidationError:
        return False
    nfo_path = _nfo_sibling(mapped if mapped is not None else Path(video_path))
    if not nfo_path.exists():
        return False
    if not settings.tagged_requires_complete:
        return True
    try:
        return is_complete(parse_nfo_xml(nfo_path.read_text(encoding="utf-8")))
    except (OSError, UnicodeDecodeError):
        return False
