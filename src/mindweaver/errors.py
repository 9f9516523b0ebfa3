"""Error types for mindweaver.

Every failure that can reach the user carries an ErrorCode so the CLI can
print one plain-language line, or a JSON object with --json-errors.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    AMBIGUOUS_RESPONSE = "AMBIGUOUS_RESPONSE"
    NO_ACTIVE_DOCUMENT = "NO_ACTIVE_DOCUMENT"
    NO_EDITOR = "NO_EDITOR"
    FILE_READ_ERROR = "FILE_READ_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class WeaverError(Exception):
    """Base class for errors that are reported to the user."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_json(self) -> str:
        error: dict[str, dict[str, Any]] = {
            "error": {"code": self.code.value, "message": self.message}
        }
        if self.details:
            error["error"]["details"] = self.details
        return json.dumps(error)


class ProviderError(WeaverError):
    """Raised when a model provider returns a non-success status or an unusable body.

    ``status`` is the HTTP status code, or None for transport failures.
    The gateway never retries; callers pick the policy.
    """

    def __init__(self, status: int | None, message: str) -> None:
        self.status = status
        prefix = f"HTTP {status}: " if status is not None else ""
        super().__init__(
            ErrorCode.PROVIDER_ERROR,
            f"{prefix}{message}",
            {"status": status} if status is not None else None,
        )


class AmbiguousResponse(WeaverError):
    """Raised when a model response does not have the expected shape."""

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(ErrorCode.AMBIGUOUS_RESPONSE, message)


class NoActiveDocument(WeaverError):
    """Raised when the note to work on cannot be found."""

    def __init__(self, message: str = "No active note") -> None:
        super().__init__(ErrorCode.NO_ACTIVE_DOCUMENT, message)


class NoEditor(WeaverError):
    """Raised when there is nowhere to write the result."""

    def __init__(self, message: str = "No editor available to write into") -> None:
        super().__init__(ErrorCode.NO_EDITOR, message)


def format_error_json(code: str, message: str, details: dict | None = None) -> str:
    """Format an arbitrary error as JSON for --json-errors output."""
    error: dict[str, dict[str, object]] = {"error": {"code": code, "message": message}}
    if details:
        error["error"]["details"] = details
    return json.dumps(error)
