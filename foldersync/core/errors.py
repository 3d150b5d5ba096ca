from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CONFIG_MISSING = "ConfigMissing"
    CSRF_MISMATCH = "CsrfMismatch"
    TOKEN_EXCHANGE_FAILED = "TokenExchangeFailed"
    REAUTHORIZATION_REQUIRED = "ReauthorizationRequired"
    SIGNATURE_INVALID = "SignatureInvalid"
    RATE_LIMITED = "RateLimited"
    TRANSIENT = "Transient"
    NETWORK_ERROR = "NetworkError"
    INVALID_PATH = "InvalidPath"
    DUPLICATE_PATH = "DuplicatePath"
    CONFLICT_RESOLVED = "ConflictResolved"
    REMOTE_ERROR = "RemoteError"


class SyncError(Exception):
    kind: ErrorKind = ErrorKind.REMOTE_ERROR
    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "retryable": self.retryable}


class ConfigMissing(SyncError):
    kind = ErrorKind.CONFIG_MISSING


class CsrfMismatch(SyncError):
    kind = ErrorKind.CSRF_MISMATCH


class TokenExchangeFailed(SyncError):
    kind = ErrorKind.TOKEN_EXCHANGE_FAILED


class ReauthorizationRequired(SyncError):
    """No usable credential; all API-dependent work stops until re-authorized."""

    kind = ErrorKind.REAUTHORIZATION_REQUIRED


class SignatureInvalid(SyncError):
    kind = ErrorKind.SIGNATURE_INVALID


class TransientError(SyncError):
    kind = ErrorKind.TRANSIENT
    retryable = True


class NetworkError(TransientError):
    kind = ErrorKind.NETWORK_ERROR


class RateLimited(SyncError):
    kind = ErrorKind.RATE_LIMITED
    retryable = True

    def __init__(self, message: str = "", retry_after: float = 10.0):
        super().__init__(message)
        self.retry_after = float(retry_after)

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["retry_after"] = self.retry_after
        return out


class InvalidPath(SyncError):
    kind = ErrorKind.INVALID_PATH


class DuplicatePath(SyncError):
    kind = ErrorKind.DUPLICATE_PATH

    def __init__(self, path_key: str, holder_id: int | None = None):
        super().__init__(f"duplicate_path: {path_key}")
        self.path_key = path_key
        self.holder_id = holder_id


class RemoteError(SyncError):
    kind = ErrorKind.REMOTE_ERROR
    retryable = True

    def __init__(self, message: str = "", status_code: int | None = None, error_summary: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.error_summary = error_summary


class CursorReset(RemoteError):
    """The stored delta cursor was invalidated remotely; a full listing is required."""

    retryable = False
