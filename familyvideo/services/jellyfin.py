"""Thin client for the Jellyfin REST API.

Calls the caller cannot proceed without raise a JellyfinError subclass.
Best-effort calls (thumbnails, sessions, refreshes, metadata pushes) log a
warning and return None or False instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from familyvideo.errors import (
    JellyfinAuthError,
    JellyfinConnectionError,
    JellyfinError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10
IMAGE_TIMEOUT = 5
SESSIONS_TIMEOUT = 5
HOME_VIDEO_GENRE = "Home Video"
# Noon US Eastern keeps the calendar date stable whatever timezone Jellyfin runs in.
PREMIERE_TIME_SUFFIX = "T12:00:00-05:00"


@dataclass(frozen=True)
class NowPlayingResult:
    item: dict[str, Any]
    device_name: str | None = None


class JellyfinClient:
    """Wrapper around the subset of the Jellyfin API the catalog uses."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        library_name: str = "Home Videos",
        username: str = "",
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.library_name = library_name
        self.username = username
        self.timeout = timeout
        self._api_key = api_key
        self._session = session or requests.Session()
        self._home_videos_library_id: str | None = None

    def _headers(self) -> dict[str, str]:
        return {"X-Emby-Token": self._api_key, "Content-Type": "application/json"}

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> requests.Response:
        """Send a request and raise typed errors for connection and HTTP failures."""

        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                headers=self._headers(),
                params=params,
                json=json_body,
                timeout=timeout or self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise JellyfinConnectionError(
                "Could not connect to Jellyfin server. Check your connection."
            ) from exc
        except requests.RequestException as exc:
            raise JellyfinError(f"Jellyfin request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise JellyfinAuthError("Invalid API key or insufficient permissions.")
        if not response.ok:
            raise JellyfinError(
                f"Jellyfin API error ({response.status_code}): {response.text}"
            )
        return response

    def _get_users(self) -> list[dict[str, Any]]:
        logger.debug("Fetching Jellyfin users")
        return self._request("GET", "/Users").json()

    def get_first_user_id(self) -> str:
        """Return the first Jellyfin user (single-user household)."""

        users = self._get_users()
        if not users:
            raise JellyfinError("No users found in Jellyfin")
        logger.debug(
            "Using first Jellyfin user",
            extra={
                "event": "jellyfin_user_selected",
                "context": {"user_count": len(users), "user": users[0].get("Name")},
            },
        )
        return users[0]["Id"]

    def get_user_id_by_name(self, username: str) -> str | None:
        """Return the ID of a user by case-insensitive name, or None."""

        wanted = username.lower()
        for user in self._get_users():
            if (user.get("Name") or "").lower() == wanted:
                return user["Id"]
        logger.warning(
            "Jellyfin user not found",
            extra={"event": "jellyfin_user_missing", "context": {"user": username}},
        )
        return None

    def get_user_id(self) -> str:
        """Return the configured user, or the first user when unset or unknown."""

        if self.username:
            user_id = self.get_user_id_by_name(self.username)
            if user_id:
                return user_id
        return self.get_first_user_id()

    def get_home_videos_library_id(self) -> str | None:
        """Return the configured library ID, cached after the first lookup."""

        if self._home_videos_library_id:
            return self._home_videos_library_id

        user_id = self.get_user_id()
        data = self._request("GET", f"/Users/{user_id}/Views").json()
        libraries = data.get("Items") or []
        for library in libraries:
            if library.get("Name") == self.library_name:
                self._home_videos_library_id = library["Id"]
                logger.info(
                    "Found Jellyfin library",
                    extra={
                        "event": "jellyfin_library_found",
                        "context": {
                            "library": self.library_name,
                            "library_id": self._home_videos_library_id,
                        },
                    },
                )
                return self._home_videos_library_id

        logger.warning(
            "Jellyfin library not found",
            extra={
                "event": "jellyfin_library_missing",
                "context": {
                    "library": self.library_name,
                    "available": [library.get("Name") for library in libraries],
                },
            },
        )
        return None

    def get_items(self) -> list[dict[str, Any]]:
        """Fetch all video items, filtered to the home videos library when known."""

        user_id = self.get_user_id()
        library_id = self.get_home_videos_library_id()
        params = {
            "IncludeItemTypes": "Video",
            "Recursive": "true",
            "Fields": "Path,ImageTags,DateCreated,PremiereDate",
            "SortBy": "SortName",
            "SortOrder": "Ascending",
        }
        if library_id:
            params["ParentId"] = library_id
        else:
            logger.warning(
                "Library not found, returning all videos",
                extra={"event": "jellyfin_items_unfiltered", "context": {}},
            )
        data = self._request("GET", f"/Users/{user_id}/Items", params=params).json()
        items = data.get("Items") or []
        logger.info(
            "Retrieved Jellyfin items",
            extra={"event": "jellyfin_items_fetched", "context": {"count": len(items)}},
        )
        return items

    def get_item(self, item_id: str) -> dict[str, Any] | None:
        """Return a single item, or None if it cannot be fetched."""

        try:
            user_id = self.get_user_id()
            return self._request("GET", f"/Users/{user_id}/Items/{item_id}").json()
        except JellyfinError as exc:
            logger.warning(
                "Failed to fetch Jellyfin item",
                extra={
                    "event": "jellyfin_item_failed",
                    "context": {"item_id": item_id, "error": exc.details},
                },
            )
            return None

    @staticmethod
    def thumbnail_url(item_id: str, has_image: bool) -> str | None:
        """Return the proxied thumbnail path so the API key stays server-side."""

        if not has_image:
            return None
        return f"/videos/{item_id}/thumbnail"

    def get_thumbnail_image(self, item_id: str) -> bytes | None:
        """Fetch the primary image bytes for an item, or None."""

        try:
            response = self._request(
                "GET", f"/Items/{item_id}/Images/Primary", timeout=IMAGE_TIMEOUT
            )
        except JellyfinError as exc:
            logger.warning(
                "Failed to fetch thumbnail",
                extra={
                    "event": "jellyfin_thumbnail_failed",
                    "context": {"item_id": item_id, "error": exc.details},
                },
            )
            return None
        return response.content

    def update_item_metadata(self, item_id: str, metadata) -> bool:
        """Push metadata straight into Jellyfin's item record.

        Jellyfin 10.9+ does not reliably re-read NFO changes, so the fields are
        written through the API as well.
        """

        payload: dict[str, Any] = {"Id": item_id}
        if metadata.title:
            payload["Name"] = metadata.title
        if metadata.date:
            payload["PremiereDate"] = f"{metadata.date}{PREMIERE_TIME_SUFFIX}"
        if metadata.description:
            payload["Overview"] = metadata.description
        if metadata.tags:
            payload["Tags"] = list(metadata.tags)
        if metadata.people:
            payload["People"] = [{"Name": name, "Type": "Actor"} for name in metadata.people]
        if metadata.rating is not None:
            payload["CommunityRating"] = metadata.rating
        payload["Genres"] = [HOME_VIDEO_GENRE]

        try:
            self._request("POST", f"/Items/{item_id}", json_body=payload)
        except JellyfinError as exc:
            logger.warning(
                "Jellyfin item update failed",
                extra={
                    "event": "jellyfin_update_failed",
                    "context": {"item_id": item_id, "error": exc.details},
                },
            )
            return False
        logger.info(
            "Jellyfin item metadata updated",
            extra={"event": "jellyfin_item_updated", "context": {"item_id": item_id}},
        )
        return True

    def get_now_playing(self, username: str | None) -> NowPlayingResult | None:
        """Return the active playback for a user (any user when unset)."""

        try:
            sessions = self._request("GET", "/Sessions", timeout=SESSIONS_TIMEOUT).json()
        except (JellyfinError, ValueError) as exc:
            logger.warning(
                "Failed to fetch Jellyfin sessions",
                extra={"event": "jellyfin_sessions_failed", "context": {"error": str(exc)}},
            )
            return None

        wanted = username.lower() if username else None
        for session in sessions or []:
            if not session.get("NowPlayingItem"):
                continue
            if wanted and (session.get("UserName") or "").lower() != wanted:
                continue
            return NowPlayingResult(
                item=session["NowPlayingItem"],
                device_name=session.get("DeviceName"),
            )
        logger.debug(
            "No active playback",
            extra={"event": "jellyfin_nothing_playing", "context": {"user": username}},
        )
        return None

    def refresh_library(self) -> None:
        """Trigger a full library scan. Best-effort."""

        try:
            self._request("POST", "/Library/Refresh")
        except JellyfinError as exc:
            logger.warning(
                "Library refresh failed",
                extra={"event": "jellyfin_refresh_failed", "context": {"error": exc.details}},
            )
            return
        logger.info(
            "Jellyfin library refresh triggered",
            extra={"event": "jellyfin_refresh_triggered", "context": {"scope": "all"}},
        )

    def refresh_home_videos_library(self) -> None:
        """Rescan only the home videos library, falling back to a full scan."""

        try:
            library_id = self.get_home_videos_library_id()
        except JellyfinError as exc:
            logger.warning(
                "Library lookup failed before refresh",
                extra={"event": "jellyfin_refresh_failed", "context": {"error": exc.details}},
            )
            return
        if not library_id:
            self.refresh_library()
            return

        params = {
            "MetadataRefreshMode": "FullRefresh",
            "ImageRefreshMode": "Default",
            "ReplaceAllMetadata": "false",
        }
        try:
            self._request("POST", f"/Items/{library_id}/Refresh", params=params)
        except JellyfinError as exc:
            logger.warning(
                "Library refresh failed",
                extra={"event": "jellyfin_refresh_failed", "context": {"error": exc.details}},
            )
            return
        logger.info(
            "Jellyfin library refresh triggered",
            extra={
                "event": "jellyfin_refresh_triggered",
                "context": {"scope": "library", "library_id": library_id},
            },
        )


def create_jellyfin_client(settings) -> JellyfinClient:
    """Build a client from application settings."""

    return JellyfinClient(
        base_url=settings.jellyfin_url,
        api_key=settings.jellyfin_api_key,
        library_name=settings.jellyfin_library_name,
        username=settings.jellyfin_user,
    )
