import json
from typing import Any, Dict, Optional

import httpx

from .prompts import GENERIC_FAILURE_NOTICE, QUOTA_NOTICE


class EllaError(Exception):
    """Base exception for Ella errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class NotFoundError(EllaError):
    """Raised when a conversation or message does not exist."""


class OwnershipError(EllaError):
    """Raised when the caller does not own the record."""


class ConflictError(EllaError):
    """Raised when a record is not in a state the operation accepts."""


class ProviderError(EllaError):
    """Raised when an external provider returns an unusable response."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        detail: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.provider = provider
        self.status_code = status_code
        self.detail = detail


class NonRetriableError(EllaError):
    """Job failures that should skip the remaining retry attempts."""


class MalformedOutputError(NonRetriableError):
    """Raised when a model's structured output cannot be parsed."""

    def __init__(self, message: str, raw: str = "", context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.raw = raw


def _embedded_error(exc: BaseException) -> Optional[Dict[str, Any]]:
    payload: Any = None
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        try:
            payload = exc.response.json()
        except ValueError:
            payload = None
    elif isinstance(exc, ProviderError) and isinstance(exc.detail, dict):
        payload = exc.detail
    if payload is None:
        try:
            payload = json.loads(str(exc))
        except ValueError:
            return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return None


def is_quota_error(exc: BaseException) -> bool:
    embedded = _embedded_error(exc)
    if embedded is not None and embedded.get("code") == 429:
        return True
    status = getattr(getattr(exc, "response", None), "status_code", None)
    if status == 429 or getattr(exc, "status_code", None) == 429:
        return True
    text = str(exc)
    return "quota" in text.lower() or "429" in text


def failure_notice(exc: BaseException) -> str:
    """Text written to a failed assistant message."""
    return QUOTA_NOTICE if is_quota_error(exc) else GENERIC_FAILURE_NOTICE


def describe_error(exc: BaseException) -> str:
    """Short user-facing text for an API error, never the raw provider payload."""
    if is_quota_error(exc):
        return QUOTA_NOTICE
    embedded = _embedded_error(exc)
    if embedded is not None:
        message = embedded.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return GENERIC_FAILURE_NOTICE
