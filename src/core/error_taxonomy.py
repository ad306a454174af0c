from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    PRECONDITION_NOT_MET = "precondition_not_met"
    BACKEND_REQUEST_FAILED = "backend_request_failed"
    TRANSCRIPTION_TIMEOUT = "transcription_timeout"
    EVENT_CONTRACT = "event_contract"
    INTERNAL_BUG = "internal_bug"


_CATEGORY_TO_USER_MESSAGE: dict[ErrorCategory, str] = {
    ErrorCategory.PRECONDITION_NOT_MET: "This action is not available yet. Check microphone permission and the selected model.",
    ErrorCategory.BACKEND_REQUEST_FAILED: "The transcription service did not complete the request. Please try again.",
    ErrorCategory.TRANSCRIPTION_TIMEOUT: "Transcription is taking too long. It may still appear in your timeline shortly.",
    ErrorCategory.EVENT_CONTRACT: "Received an unexpected update from the transcription service.",
    ErrorCategory.INTERNAL_BUG: "Something went wrong. Please retry.",
}


class CompanionError(RuntimeError):
    """Base class for recoverable, user-visible controller errors."""

    category: ErrorCategory = ErrorCategory.INTERNAL_BUG

    def __init__(self, message: str = ""):
        super().__init__(message or user_message_for_category(self.category))

    @property
    def user_message(self) -> str:
        return user_message_for_category(self.category)


class PreconditionNotMet(CompanionError):
    category = ErrorCategory.PRECONDITION_NOT_MET


class BackendRequestFailed(CompanionError):
    category = ErrorCategory.BACKEND_REQUEST_FAILED

    def __init__(self, message: str = "", *, command: str = ""):
        super().__init__(message)
        self.command = command


class TranscriptionTimeout(CompanionError):
    category = ErrorCategory.TRANSCRIPTION_TIMEOUT


def classify_backend_error(message: str) -> ErrorCategory:
    text = (message or "").lower().strip()
    if any(token in text for token in ("timeout", "timed out")):
        return ErrorCategory.TRANSCRIPTION_TIMEOUT
    return ErrorCategory.BACKEND_REQUEST_FAILED


def classify_exception(exc: Exception) -> ErrorCategory:
    if isinstance(exc, CompanionError):
        return exc.category
    return ErrorCategory.INTERNAL_BUG


def user_message_for_category(category: ErrorCategory) -> str:
    return _CATEGORY_TO_USER_MESSAGE.get(category, _CATEGORY_TO_USER_MESSAGE[ErrorCategory.INTERNAL_BUG])


def user_message_for_exception(exc: Exception) -> str:
    return user_message_for_category(classify_exception(exc))
