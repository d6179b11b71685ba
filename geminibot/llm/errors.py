from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

if TYPE_CHECKING:
    from geminibot.domain import RetryOutcome


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    REPOSITORY_FAILURE = "repository_failure"
    SAFETY_BLOCKED = "safety_blocked"
    RECITATION_BLOCKED = "recitation_blocked"
    EMPTY_RESPONSE = "empty_response"
    RETRIES_EXHAUSTED = "retries_exhausted"
    AUTH_FAILURE = "auth_failure"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    BAD_REQUEST = "bad_request"
    CONNECTION = "connection"
    UPSTREAM = "upstream"
    VALIDATION_FAILURE = "validation_failure"


class LLMError(Exception):
    """Base error for pipeline failures. ``kind`` is fixed where the error is raised."""

    kind: ErrorKind = ErrorKind.UPSTREAM
    retryable: bool = False

    def __init__(self, message: str = "", *, status_code: Optional[int] = None):
        super().__init__(message or self.kind.value)
        self.status_code = status_code


class LLMTimeoutError(LLMError):
    kind = ErrorKind.TIMEOUT


class RepositoryError(LLMError):
    kind = ErrorKind.REPOSITORY_FAILURE


class SafetyBlockedError(LLMError):
    kind = ErrorKind.SAFETY_BLOCKED


class RecitationBlockedError(LLMError):
    kind = ErrorKind.RECITATION_BLOCKED


class EmptyResponseError(LLMError):
    kind = ErrorKind.EMPTY_RESPONSE
    retryable = True


class RetriesExhaustedError(LLMError):
    kind = ErrorKind.RETRIES_EXHAUSTED

    def __init__(self, outcome: "RetryOutcome"):
        super().__init__(
            f"Gave up after {outcome.attempts} attempts; last error: {outcome.last_error}"
        )
        self.outcome = outcome


class LLMAuthError(LLMError):
    kind = ErrorKind.AUTH_FAILURE


class LLMForbiddenError(LLMError):
    kind = ErrorKind.FORBIDDEN


class LLMNotFoundError(LLMError):
    kind = ErrorKind.NOT_FOUND


class LLMRateLimitError(LLMError):
    kind = ErrorKind.RATE_LIMITED


class LLMBadRequestError(LLMError):
    kind = ErrorKind.BAD_REQUEST


class LLMConnectionError(LLMError):
    kind = ErrorKind.CONNECTION


class LLMUpstreamError(LLMError):
    kind = ErrorKind.UPSTREAM


class ValidationError(LLMError):
    kind = ErrorKind.VALIDATION_FAILURE


def error_kind(error: BaseException) -> Optional[ErrorKind]:
    if isinstance(error, LLMError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    return None


_ADMIN_MESSAGES = {
    ErrorKind.TIMEOUT: "⏰ Timeout: the request exceeded its deadline.",
    ErrorKind.REPOSITORY_FAILURE: "❌ History Error: could not fetch conversation history from Discord.",
    ErrorKind.SAFETY_BLOCKED: "🚫 Safety Block: the response was blocked by the safety filter.",
    ErrorKind.RECITATION_BLOCKED: "🚫 Recitation Block: the response was blocked as potential copyrighted content.",
    ErrorKind.EMPTY_RESPONSE: "⚠️ Empty Response: the model returned no content.",
    ErrorKind.AUTH_FAILURE: "❌ Authentication Error: Invalid API key or credentials.",
    ErrorKind.FORBIDDEN: "❌ Forbidden: the API key has no permission for this resource.",
    ErrorKind.NOT_FOUND: "❌ Not Found: the requested model was not found.",
    ErrorKind.RATE_LIMITED: "⚠️ Rate Limited: API provider is temporarily rate-limited. Please retry shortly.",
    ErrorKind.BAD_REQUEST: "❌ Bad Request: the API rejected the request as malformed.",
    ErrorKind.CONNECTION: "❌ Connection Error: Unable to connect to the API provider.",
    ErrorKind.VALIDATION_FAILURE: "⚠️ Validation Error: the input was rejected before sending.",
}

_USER_MESSAGES = {
    ErrorKind.TIMEOUT: (
        "⏰ The request took too long. Try shortening your question, "
        "or start a new thread so less history is sent."
    ),
    ErrorKind.REPOSITORY_FAILURE: "Could not read the conversation history. Please try again shortly.",
    ErrorKind.SAFETY_BLOCKED: (
        "🚫 The answer was blocked by the model's safety filter. "
        "Please rephrase your question."
    ),
    ErrorKind.RECITATION_BLOCKED: (
        "🚫 The answer was blocked because it may reproduce copyrighted content. "
        "Please ask in a different way."
    ),
    ErrorKind.EMPTY_RESPONSE: "The model service is not responding right now. Please try again later.",
    ErrorKind.RETRIES_EXHAUSTED: "The model service is not responding right now. Please try again later.",
    ErrorKind.AUTH_FAILURE: "Could not authenticate with the model service. Ask an admin to check the API key.",
    ErrorKind.FORBIDDEN: "This server's API key is not allowed to use the selected model.",
    ErrorKind.NOT_FOUND: "The selected model could not be found. Ask an admin to check /set-model.",
    ErrorKind.RATE_LIMITED: "The model service is busy right now. Please try again shortly.",
    ErrorKind.CONNECTION: "Could not connect to the model service. Please try again later.",
}


def parse_error_message(error: BaseException) -> str:
    """
    Map exceptions into short, human-readable messages.
    Used for admin notifications and logs.
    """
    kind = error_kind(error)
    if kind is ErrorKind.RETRIES_EXHAUSTED:
        return f"⚠️ Retries Exhausted: {error}"
    if kind in _ADMIN_MESSAGES:
        return _ADMIN_MESSAGES[kind]
    s, t = str(error), type(error).__name__
    return f"❌ {t}: {s.split(chr(10))[0][:100]}"


def format_user_friendly_error(error: BaseException) -> str:
    """
    Short, safe error message suitable for end users.
    """
    kind = error_kind(error)
    if kind is ErrorKind.VALIDATION_FAILURE:
        return f"⚠️ {error}"
    return _USER_MESSAGES.get(kind, "An unexpected error occurred while calling the model. Admins have been notified.")


def error_messages(error: BaseException) -> Tuple[str, str]:
    """
    Convenience helper returning (admin_message, user_message).
    """
    return parse_error_message(error), format_user_friendly_error(error)
