"""Error taxonomy and backend error classification."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Final, Iterable

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .uploads import UploadBatchResult


NO_RESPONSE_MESSAGE: Final[str] = "No response from server. Please check your connection."
CREDENTIAL_MESSAGE: Final[str] = (
    "Upload failed. This is commonly caused by an invalid API key or one that lacks the "
    "necessary permissions. Please verify your API key and permissions."
)


class SopDeskError(Exception):
    """Base class for every error raised by sopdesk."""


class TransportError(SopDeskError):
    """HTTP-level failure talking to the backend."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details
        self.code = code


class NoResponseError(TransportError):
    """The backend could not be reached or did not answer in time."""

    def __init__(self, message: str = NO_RESPONSE_MESSAGE, *, details: Any = None) -> None:
        super().__init__(message, details=details if details is not None else "Network error")


class CredentialError(TransportError):
    """The backend rejected the configured credential."""


class OperationError(SopDeskError):
    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(message)
        self.operation = operation


class OperationFailed(OperationError):
    """A long-running operation completed with an error payload."""

    def __init__(self, operation: str, error: Any) -> None:
        detail = (error.get("message") or "unknown error") if isinstance(error, dict) else error
        super().__init__(f"Operation {operation} failed: {detail}", operation=operation)
        self.error = error


class OperationTimeout(OperationError):
    def __init__(self, operation: str, attempts: int) -> None:
        super().__init__(
            f"Operation {operation} did not complete after {attempts} checks",
            operation=operation,
        )
        self.attempts = attempts


class OperationCancelled(OperationError):
    def __init__(self, operation: str) -> None:
        super().__init__(f"Polling for operation {operation} was cancelled", operation=operation)


class MetadataValidationError(SopDeskError):
    """Client-side metadata validation failed; nothing was sent to the backend."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid metadata")


class UploadBatchError(SopDeskError):
    """An upload batch stopped at a failed file."""

    def __init__(self, result: "UploadBatchResult") -> None:
        failed = result.failed
        name = failed[0].file_name if failed else "unknown file"
        reason = failed[0].error if failed else "unknown error"
        super().__init__(f"Upload of {name} failed: {reason}")
        self.result = result


class AudioSessionError(SopDeskError):
    """The realtime audio session could not start or lost its channel."""


class ErrorKind(Enum):
    TRANSPORT = auto()
    NO_RESPONSE = auto()
    CREDENTIAL = auto()
    OPERATION_FAILED = auto()
    OPERATION_TIMEOUT = auto()
    VALIDATION = auto()
    UNKNOWN = auto()


@dataclass(frozen=True, slots=True)
class CredentialRule:
    """Maps a backend error code or message fragment to a credential problem."""

    codes: tuple[str, ...]
    fragment: str


CREDENTIAL_RULES: Final[tuple[CredentialRule, ...]] = (
    CredentialRule(codes=("API_KEY_INVALID",), fragment="api key not valid"),
    CredentialRule(codes=("ENTITY_NOT_FOUND",), fragment="requested entity was not found"),
    CredentialRule(codes=("UPLOAD_URL_FAILED",), fragment="failed to get upload url"),
    CredentialRule(codes=("PERMISSION_DENIED",), fragment="permission denied"),
)


def _normalize_code(code: Any) -> str | None:
    if code is None:
        return None
    text = str(code).strip().upper().replace("-", "_").replace(" ", "_")
    return text or None


def is_credential_problem(
    message: str | None,
    *,
    code: str | None = None,
    rules: Iterable[CredentialRule] = CREDENTIAL_RULES,
) -> bool:
    """Return True when the code (preferred) or message matches a credential rule."""

    rules = tuple(rules)
    normalized = _normalize_code(code)
    if normalized is not None:
        if any(normalized in rule.codes for rule in rules):
            return True
    lowered = (message or "").lower()
    return any(rule.fragment in lowered for rule in rules)


def classify_error(exc: BaseException | None) -> ErrorKind:
    if exc is None:
        return ErrorKind.UNKNOWN
    if isinstance(exc, CredentialError):
        return ErrorKind.CREDENTIAL
    if isinstance(exc, NoResponseError):
        return ErrorKind.NO_RESPONSE
    if isinstance(exc, OperationFailed):
        return ErrorKind.OPERATION_FAILED
    if isinstance(exc, OperationTimeout):
        return ErrorKind.OPERATION_TIMEOUT
    if isinstance(exc, MetadataValidationError):
        return ErrorKind.VALIDATION
    code = getattr(exc, "code", None)
    if is_credential_problem(str(exc), code=code):
        return ErrorKind.CREDENTIAL
    if isinstance(exc, TransportError):
        return ErrorKind.TRANSPORT
    return ErrorKind.UNKNOWN


def reclassify(exc: BaseException) -> BaseException:
    """Promote a transport error describing a credential problem to :class:`CredentialError`."""

    if isinstance(exc, (CredentialError, NoResponseError)) or not isinstance(exc, TransportError):
        return exc
    if not is_credential_problem(exc.message, code=exc.code):
        return exc
    promoted = CredentialError(
        exc.message,
        status_code=exc.status_code,
        details=exc.details,
        code=exc.code,
    )
    promoted.__cause__ = exc
    return promoted


@dataclass(slots=True)
class ApiErrorDetails:
    message: str
    status_code: int | None = None
    details: Any = None
    is_credential_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
            "is_credential_error": self.is_credential_error,
        }


def error_details(exc: BaseException | None) -> ApiErrorDetails | None:
    """Describe an error the way a user-facing surface should present it."""

    if exc is None:
        return None
    kind = classify_error(exc)
    status_code = getattr(exc, "status_code", None)
    details = getattr(exc, "details", None)
    if kind is ErrorKind.CREDENTIAL:
        return ApiErrorDetails(
            message=CREDENTIAL_MESSAGE,
            status_code=status_code,
            details=details,
            is_credential_error=True,
        )
    if kind is ErrorKind.VALIDATION:
        return ApiErrorDetails(message=str(exc), details=list(getattr(exc, "errors", [])))
    message = getattr(exc, "message", None) or str(exc) or "Request failed"
    return ApiErrorDetails(message=message, status_code=status_code, details=details)


__all__ = [
    "ApiErrorDetails",
    "AudioSessionError",
    "CREDENTIAL_MESSAGE",
    "CREDENTIAL_RULES",
    "CredentialError",
    "CredentialRule",
    "ErrorKind",
    "MetadataValidationError",
    "NoResponseError",
    "OperationCancelled",
    "OperationFailed",
    "OperationTimeout",
    "SopDeskError",
    "TransportError",
    "UploadBatchError",
    "classify_error",
    "error_details",
    "is_credential_problem",
    "reclassify",
]
