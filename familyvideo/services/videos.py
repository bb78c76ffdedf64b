"""Video listing and metadata tagging on top of Jellyfin and NFO files."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any

from familyvideo.errors import NotFoundError, ValidationError
from familyvideo.models import NowPlaying, Video, VideoMetadata
from familyvideo.services import nfo
from familyvideo.services.jellyfin import JellyfinClient

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 10
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_tags(raw_tags: list[str]) -> list[str]:
    """Normalize tags by trimming, de-duplicating (case-insensitive), and dropping empties."""

    normalized: list[str] = []
    seen = set()
    for raw_tag in raw_tags:
        cleaned = raw_tag.strip()
        if not cleaned:
            continue
        key = cleaned.lower()
        if key in seen:
            continue
        seen.add(key)
        normalized.append(cleaned)
    return normalized


def _item_date(item: dict[str, Any]) -> str | None:
    raw = item.get("PremiereDate") or item.get("DateCreated")
    if not raw:
        return None
    return str(raw)[:10]


def _has_primary_image(item: dict[str, Any]) -> bool:
    return bool((item.get("ImageTags") or {}).get("Primary"))


def to_video(item: dict[str, Any], settings, is_tagged: bool | None = None) -> Video:
    """Build a Video from a Jellyfin item."""

    path = item.get("Path") or ""
    return Video(
        id=item["Id"],
        filename=item.get("Name") or "",
        path=path,
        is_tagged=nfo.is_tagged(path, settings) if is_tagged is None else is_tagged,
        thumbnail_url=JellyfinClient.thumbnail_url(item["Id"], _has_primary_image(item)),
        date_created=_item_date(item),
    )


def list_videos(jellyfin, settings) -> list[Video]:
    """Return every video in the home videos library with its tagged flag."""

    videos = [to_video(item, settings) for item in jellyfin.get_items()]
    logger.info(
        "Listed videos",
        extra={
            "event": "videos_listed",
            "context": {
                "count": len(videos),
                "tagged": sum(1 for video in videos if video.is_tagged),
            },
        },
    )
    return videos


def _require_item(jellyfin, item_id: str) -> dict[str, Any]:
    item = jellyfin.get_item(item_id)
    if not item:
        raise NotFoundError(f"Video {item_id} not found")
    return item


def load_metadata(jellyfin, settings, item_id: str) -> VideoMetadata | None:
    """Return the saved metadata for a video, or None when it is untagged."""

    item = _require_item(jellyfin, item_id)
    return nfo.read_nfo(item.get("Path") or "", settings)


def _string_list(payload: dict[str, Any], key: str) -> list[str]:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(entry, str) for entry in value):
        raise ValidationError(f"{key} must be a list of strings")
    return normalize_tags(value)


def validate_metadata(payload: Any) -> VideoMetadata:
    """Check a metadata payload and return it as VideoMetadata.

    Raises:
        ValidationError: describing the first invalid field.
    """

    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    title = payload.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Title is required")

    raw_date = payload.get("date")
    video_date = None
    if raw_date not in (None, ""):
        if not isinstance(raw_date, str) or not _DATE_RE.match(raw_date):
            raise ValidationError("date must be formatted as YYYY-MM-DD")
        try:
            date.fromisoformat(raw_date)
        except ValueError as exc:
            raise ValidationError(f"Invalid date: {raw_date}") from exc
        video_date = raw_date

    rating = payload.get("rating")
    if rating is not None:
        if isinstance(rating, bool) or not isinstance(rating, int):
            raise ValidationError("rating must be a whole number")
        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationError(f"rating must be between {MIN_RATING} and {MAX_RATING}")

    description = payload.get("description")
    if description is not None and not isinstance(description, str):
        raise ValidationError("description must be a string")

    return VideoMetadata(
        title=title.strip(),
        date=video_date,
        people=_string_list(payload, "people"),
        tags=_string_list(payload, "tags"),
        rating=rating,
        description=(description or "").strip() or None,
    )


def save_metadata(jellyfin, settings, item_id: str, payload: Any) -> tuple[Video, bool]:
    """Validate, write the NFO and push the metadata into Jellyfin.

    Returns:
        The tagged Video and whether the Jellyfin update succeeded.
    """

    metadata = validate_metadata(payload)
    item = _require_item(jellyfin, item_id)
    path = item.get("Path") or ""
    if not path:
        raise ValidationError(f"Video {item_id} has no file path")

    nfo.write_nfo(path, metadata, settings)
    synced = jellyfin.update_item_metadata(item_id, metadata)
    logger.info(
        "Saved video metadata",
        extra={
            "event": "metadata_saved",
            "context": {"item_id": item_id, "jellyfin_synced": synced},
        },
    )
    return to_video(item, settings, is_tagged=True), synced


def now_playing(jellyfin, settings) -> NowPlaying | None:
    """Return what the configured user is watching, or None."""

    result = jellyfin.get_now_playing(settings.jellyfin_user or None)
    if result is None:
        return None
    item = result.item
    item_id = item.get("Id")
    if not item_id:
        return None
    return NowPlaying(
        id=item_id,
        name=item.get("Name") or "",
        thumbnail_url=JellyfinClient.thumbnail_url(item_id, _has_primary_image(item)),
        device_name=result.device_name,
    )
