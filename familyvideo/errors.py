"""Exception types and their HTTP classification."""

from __future__ import annotations

import errno


class FamilyVideoError(Exception):
    """Base error carrying the HTTP status and short label for API responses."""

    status_code = 500
    label = "Internal server error"

    def __init__(self, details: str, label: str | None = None) -> None:
        super().__init__(details)
        self.details = details
        if label:
            self.label = label


class ValidationError(FamilyVideoError):
    status_code = 400
    label = "Validation failed"


class NotFoundError(FamilyVideoError):
    status_code = 404
    label = "Not found"


class ConflictError(FamilyVideoError):
    status_code = 409
    label = "File already exists"


class ExtractionError(FamilyVideoError):
    """No chapter could be extracted from a DVD."""

    label = "DVD extraction failed"


class ToolUnavailableError(FamilyVideoError):
    status_code = 503
    label = "DVD tools not available"


class JellyfinError(FamilyVideoError):
    label = "Jellyfin request failed"


class JellyfinConnectionError(JellyfinError):
    status_code = 503
    label = "Failed to connect to Jellyfin"


class JellyfinAuthError(JellyfinError):
    status_code = 401
    label = "Jellyfin authentication failed"


_TOOL_MISSING_MARKERS = ("lsdvd", "command not found")


def classify_exception(exc: BaseException) -> tuple[int, str, str]:
    """Return (status, error label, details) for an exception."""

    if isinstance(exc, FamilyVideoError):
        return exc.status_code, exc.label, exc.details
    if isinstance(exc, OSError):
        if exc.errno in (errno.EACCES, errno.EPERM):
            return (
                403,
                "Permission denied",
                "Cannot write to media directory. Check file permissions.",
            )
        if exc.errno == errno.ENOSPC:
            return 507, "Disk full", "No space left on device."
    message = str(exc) or exc.__class__.__name__
    if any(marker in message for marker in _TOOL_MISSING_MARKERS):
        return (
            503,
            ToolUnavailableError.label,
            "Server is missing required tools (lsdvd, ffmpeg) for DVD processing.",
        )
    return 500, FamilyVideoError.label, message
