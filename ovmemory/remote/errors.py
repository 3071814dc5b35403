"""Remote error type and failure classification.

The remote API has no stable machine-readable error taxonomy across all failure modes, so
"missing path" and "already exists" are recognised heuristically: HTTP status first, then the
error code, then message text. All of that matching lives in ``classify_error``.
"""

from __future__ import annotations

import json
import re
from enum import StrEnum
from typing import Any

import httpx

_MISSING_CODE_RE = re.compile(r"not[_-]?found", re.IGNORECASE)
_EXISTS_CODE_RE = re.compile(r"already[_-]?exists", re.IGNORECASE)
_MISSING_PHRASES = (
    "no such file or directory",
    "no such directory",
    "not found",
    "path not found",
)
_EXISTS_PHRASES = (
    "already exists",
    "file exists",
    "directory exists",
)
_TRANSIENT_STATUSES = frozenset({502, 503, 504})


class OpenVikingHttpError(Exception):
    """Raised when the remote service returns an error response."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details


class RemoteErrorKind(StrEnum):
    """How the sync engine should treat a failed remote call."""

    MISSING_PATH = "missing_path"
    ALREADY_EXISTS = "already_exists"
    TRANSIENT = "transient"
    FATAL = "fatal"


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, OpenVikingHttpError):
        parts = [exc.message]
        if exc.details:
            parts.append(json.dumps(exc.details, sort_keys=True, default=str))
        return " ".join(part for part in parts if part).lower()
    return str(exc).lower()


def _classify_text(text: str) -> RemoteErrorKind | None:
    if any(phrase in text for phrase in _MISSING_PHRASES):
        return RemoteErrorKind.MISSING_PATH
    if any(phrase in text for phrase in _EXISTS_PHRASES):
        return RemoteErrorKind.ALREADY_EXISTS
    return None


def classify_error(exc: BaseException) -> RemoteErrorKind:
    """Classify a remote failure. Unrecognised errors are FATAL."""
    if isinstance(exc, OpenVikingHttpError):
        if exc.status_code == 404:
            return RemoteErrorKind.MISSING_PATH
        if exc.status_code == 409:
            return RemoteErrorKind.ALREADY_EXISTS
        if exc.code:
            if _MISSING_CODE_RE.search(exc.code):
                return RemoteErrorKind.MISSING_PATH
            if _EXISTS_CODE_RE.search(exc.code):
                return RemoteErrorKind.ALREADY_EXISTS
        by_text = _classify_text(_error_text(exc))
        if by_text is not None:
            return by_text
        if exc.status_code in _TRANSIENT_STATUSES:
            return RemoteErrorKind.TRANSIENT
        return RemoteErrorKind.FATAL

    if isinstance(exc, httpx.TransportError):
        return RemoteErrorKind.TRANSIENT

    return _classify_text(_error_text(exc)) or RemoteErrorKind.FATAL


def is_missing_path(exc: BaseException) -> bool:
    return classify_error(exc) is RemoteErrorKind.MISSING_PATH


def is_already_exists(exc: BaseException) -> bool:
    return classify_error(exc) is RemoteErrorKind.ALREADY_EXISTS
