"""Error taxonomy for the chat pipeline.

Every terminal failure is rendered as a single JSON object ``{"error": ..., "code": ...}``
by the exception handler in ``main.py``; the HTTP status carries the category.
"""

from typing import Any, Dict, Optional


class ChatPipelineError(Exception):
    status_code = 500
    default_code: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra or {}
        self.headers = headers or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.code:
            payload["code"] = self.code
        payload.update(self.extra)
        return payload


class ValidationError(ChatPipelineError):
    """Malformed or missing request fields. Raised before any external call."""

    status_code = 400
    default_code = "INVALID_REQUEST"


class PolicyError(ChatPipelineError):
    """The caller may not use the requested capability or model."""

    status_code = 403


class QuotaError(ChatPipelineError):
    """Anonymous rate limit or exhausted credits."""

    status_code = 429


class UpstreamError(ChatPipelineError):
    status_code = 500
    default_code = "UPSTREAM_ERROR"


class UpstreamTimeout(UpstreamError):
    default_code = "UPSTREAM_TIMEOUT"


class ConfigurationError(ChatPipelineError):
    """A required API key is missing and the caller supplied no fallback."""

    status_code = 401
    default_code = "MISSING_API_KEY"


class ProcessingError(ChatPipelineError):
    status_code = 500
    default_code = "PROCESSING_ERROR"


GUEST_WEB_SEARCH_MESSAGE = "Web search is not available for guest users. Please sign up to use this feature."
INSUFFICIENT_CREDITS_MESSAGE = "Insufficient credits for this model. Upgrade your plan or add your own API key."
SEARCH_FAILED_MESSAGE = "Web search failed. Please try again later."
SEARCH_TIMEOUT_MESSAGE = "Web search timed out. Please try again with a more specific query."
PROCESSING_FAILED_MESSAGE = "Failed to process request. Please try again."
GENERATION_FAILED_MESSAGE = "The model could not be reached. Please try again."


def guest_search_restricted() -> PolicyError:
    return PolicyError(GUEST_WEB_SEARCH_MESSAGE, code="GUEST_WEB_SEARCH_RESTRICTED")


def insufficient_credits(message: str = INSUFFICIENT_CREDITS_MESSAGE) -> QuotaError:
    return QuotaError(message, code="INSUFFICIENT_CREDITS", status_code=403)
