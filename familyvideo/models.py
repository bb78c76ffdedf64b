"""Lightweight data structures for the family video catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Video:
    """A video item from the Jellyfin library with its tagged status."""

    id: str
    filename: str
    path: str
    is_tagged: bool
    thumbnail_url: str | None = None
    date_created: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "filename": self.filename,
            "path": self.path,
            "isTagged": self.is_tagged,
        }
        if self.thumbnail_url:
            payload["thumbnailUrl"] = self.thumbnail_url
        if self.date_created:
            payload["dateCreated"] = self.date_created
        return payload


@dataclass
class VideoMetadata:
    """Human-entered metadata for a home video, stored in NFO format."""

    title: str
    date: str | None = None
    people: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    rating: int | None = None
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "title": self.title,
            "people": list(self.people),
            "tags": list(self.tags),
        }
        if self.date:
            payload["date"] = self.date
        if self.rating is not None:
            payload["rating"] = self.rating
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True)
class DvdChapter:
    """One chapter of a DVD title, in seconds."""

    index: int
    duration: float
    start_time: float


@dataclass(frozen=True)
class UploadResult:
    """Result of a single video upload."""

    filename: str
    size: int
    mime_type: str

    def to_dict(self) -> dict[str, Any]:
        return {"filename": self.filename, "size": self.size, "mimeType": self.mime_type}


@dataclass(frozen=True)
class NowPlaying:
    """The video currently streaming for the configured Jellyfin user."""

    id: str
    name: str
    thumbnail_url: str | None = None
    device_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "name": self.name}
        if self.thumbnail_url:
            payload["thumbnailUrl"] = self.thumbnail_url
        if self.device_name:
            payload["deviceName"] = self.device_name
        return payload


@dataclass
class DvdExtractionProgress:
    """Progress report for a DVD extraction run.

    status moves analyzing -> extracting -> complete, or ends in error.
    """

    status: str
    total_chapters: int | None = None
    current_chapter: int | None = None
    current_filename: str | None = None
    error: str | None = None
    extracted_files: list[str] = field(default_factory=list)
