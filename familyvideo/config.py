"""Configuration helpers for the family video catalog."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping


DEFAULT_PORT = 3001
DEFAULT_CORS_ORIGIN = "http://localhost:3000"
DEFAULT_LIBRARY_NAME = "Home Videos"
DEFAULT_MEDIA_PREFIX = "/home-videos"
DEFAULT_MAX_UPLOAD_SIZE_MB = 2048
DEFAULT_MAX_DVD_UPLOAD_SIZE_MB = 10240
DEFAULT_PRESET_TAGS = (
    "Christmas",
    "Mexico",
    "Family",
    "Birthday",
    "Vacation",
    "Holiday",
    "School",
    "Sports",
)

REQUIRED_VARIABLES = ("JELLYFIN_URL", "JELLYFIN_API_KEY", "MEDIA_PATH")


class ConfigError(RuntimeError):
    """Raised when the environment is missing required settings."""


@dataclass(frozen=True)
class AppPaths:
    """Container for application paths.

    The data directory holds the jobs database, logs and upload staging area.
    """

    root: Path
    data_dir: Path
    db_path: Path
    logs_dir: Path
    upload_dir: Path


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from the environment."""

    jellyfin_url: str
    jellyfin_api_key: str = field(repr=False)
    media_path: Path
    data_dir: Path
    port: int = DEFAULT_PORT
    cors_origin: str = DEFAULT_CORS_ORIGIN
    jellyfin_user: str = ""
    jellyfin_library_name: str = DEFAULT_LIBRARY_NAME
    jellyfin_media_prefix: str = DEFAULT_MEDIA_PREFIX
    max_upload_size_mb: int = DEFAULT_MAX_UPLOAD_SIZE_MB
    max_dvd_upload_size_mb: int = DEFAULT_MAX_DVD_UPLOAD_SIZE_MB
    tagged_requires_complete: bool = False
    preset_people: tuple[str, ...] = ()
    preset_tags: tuple[str, ...] = DEFAULT_PRESET_TAGS
    secret_key: str = field(default="familyvideo-dev-secret", repr=False)

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    @property
    def max_dvd_upload_size_bytes(self) -> int:
        return self.max_dvd_upload_size_mb * 1024 * 1024


def get_paths(data_dir: Path | None = None) -> AppPaths:
    """Resolve application paths relative to the data directory.

    Args:
        data_dir: Optional data directory override. Defaults to ./data.

    Returns:
        AppPaths with database, log and upload staging locations.
    """

    base = data_dir or Path.cwd() / "data"
    return AppPaths(
        root=base.parent,
        data_dir=base,
        db_path=base / "familyvideo.db",
        logs_dir=base / "logs",
        upload_dir=base / "uploads",
    )


def ensure_dirs(paths: AppPaths) -> AppPaths:
    """Ensure the data, log and upload directories exist."""

    for directory in (paths.data_dir, paths.logs_dir, paths.upload_dir):
        directory.mkdir(parents=True, exist_ok=True)
    return paths


def _split_list(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _parse_bool(raw: str | None) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _parse_positive_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from environment variables.

    Raises:
        ConfigError: when required variables are missing or malformed.
    """

    env = os.environ if environ is None else environ
    missing = [key for key in REQUIRED_VARIABLES if not env.get(key, "").strip()]
    if missing:
        raise ConfigError(
            "Missing required environment variables: " + ", ".join(missing)
        )

    data_dir_raw = env.get("FAMILYVIDEO_DATA_DIR", "").strip()
    data_dir = Path(data_dir_raw) if data_dir_raw else Path.cwd() / "data"
    preset_tags = _split_list(env.get("PRESET_TAGS")) or DEFAULT_PRESET_TAGS

    settings = Settings(
        jellyfin_url=env["JELLYFIN_URL"].strip().rstrip("/"),
        jellyfin_api_key=env["JELLYFIN_API_KEY"].strip(),
        media_path=Path(env["MEDIA_PATH"].strip()),
        data_dir=data_dir,
        port=_parse_positive_int(env, "PORT", DEFAULT_PORT),
        cors_origin=env.get("CORS_ORIGIN", DEFAULT_CORS_ORIGIN),
        jellyfin_user=env.get("JELLYFIN_USER", "").strip(),
        jellyfin_library_name=env.get("JELLYFIN_LIBRARY_NAME", DEFAULT_LIBRARY_NAME),
        jellyfin_media_prefix=env.get("JELLYFIN_MEDIA_PREFIX", DEFAULT_MEDIA_PREFIX),
        max_upload_size_mb=_parse_positive_int(
            env, "MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB
        ),
        max_dvd_upload_size_mb=_parse_positive_int(
            env, "MAX_DVD_UPLOAD_SIZE_MB", DEFAULT_MAX_DVD_UPLOAD_SIZE_MB
        ),
        tagged_requires_complete=_parse_bool(env.get("TAGGED_REQUIRES_COMPLETE")),
        preset_people=_split_list(env.get("PRESET_PEOPLE")),
        preset_tags=preset_tags,
        secret_key=env.get("FAMILYVIDEO_SECRET_KEY", "familyvideo-dev-secret"),
    )
    logging.getLogger(__name__).info(
        "Loaded settings",
        extra={
            "event": "settings_loaded",
            "context": {
                "jellyfin_url": settings.jellyfin_url,
                "media_path": str(settings.media_path),
                "library_name": settings.jellyfin_library_name,
                "data_dir": str(settings.data_dir),
            },
        },
    )
    return settings
