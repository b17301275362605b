"""Exception taxonomy for catalog ingestion and the shared retry classification.

Categories:
1. Precondition errors: the upload is rejected before a version exists.
2. Transient store/provider errors: retried with bounded backoff.
3. Non-retryable provider errors (auth, bad request): abort at once.
4. Conflict errors from the relational store: never retried.
5. Cleanup errors: logged by the caller and otherwise ignored.
"""
from __future__ import annotations

RETRYABLE_TRANSPORT_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ENOTFOUND"})


class CatalogIngestionError(Exception):
    """Base class for ingestion pipeline failures."""
    pass


class PreconditionError(CatalogIngestionError):
    """Raised when an upload cannot be processed at all."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class VersionConflictError(CatalogIngestionError):
    """Raised when the relational store rejects a new catalog version."""

    def __init__(self, reason: str, *, provider_id: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.provider_id = provider_id


class InvalidStatusTransition(CatalogIngestionError):
    """Raised when a catalog version is moved along an edge the lifecycle forbids."""

    def __init__(self, version_id: str | None, current: str, target: str):
        super().__init__(f"Catalog version {version_id} cannot move from {current} to {target}")
        self.version_id = version_id
        self.current = current
        self.target = target


class ExternalServiceError(CatalogIngestionError):
    """Failure reported by an external provider (embeddings, vector index).

    ``status_code`` is the HTTP status when one was received; ``code`` is a
    transport error code such as ``ECONNRESET``; ``transport`` marks
    connection-level failures with no response at all.
    """

    service = "external service"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        transport: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.transport = transport

    @property
    def retryable(self) -> bool:
        return classify_failure(self.status_code, self.code, transport=self.transport)


class EmbeddingGenerationError(ExternalServiceError):
    """Raised when the embedding provider fails."""

    service = "embedding"


class VectorIndexError(ExternalServiceError):
    """Raised when the vector index rejects an operation."""

    service = "vector index"

    def __init__(self, message: str, *, operation: str = "unknown", **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation


class RetriesExhaustedError(CatalogIngestionError):
    """Raised when a retryable call keeps failing until attempts run out."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(f"Failed to {operation} after {attempts} attempts. Error: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


def classify_failure(status_code: int | None, code: str | None = None, *, transport: bool = False) -> bool:
    """Return True when a failure is worth retrying.

    429 and 5xx responses are retryable, as are transport errors. Auth and
    bad-request statuses are not, and anything unrecognised is treated as
    non-retryable.
    """
    if status_code is not None:
        if status_code in (400, 401, 403, 404):
            return False
        if status_code == 429 or 500 <= status_code < 600:
            return True
        return False
    if transport:
        return True
    return code in RETRYABLE_TRANSPORT_CODES


def is_retryable(exc: BaseException) -> bool:
    """Classify any exception raised inside a retried call."""
    if isinstance(exc, ExternalServiceError):
        return exc.retryable
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False


def describe_failure(exc: BaseException) -> str:
    """Human-readable failure reason recorded on the audit trail."""
    if isinstance(exc, ExternalServiceError) and not exc.retryable:
        return f"Non-retryable {exc.service} error: {exc.message}"
    return str(exc)
