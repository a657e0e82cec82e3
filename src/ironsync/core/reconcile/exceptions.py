"""
Custom exceptions for reconciliation.

This module defines the error taxonomy of the reconciliation engine. Every
error keeps a human-readable message plus a context dictionary, so callers
(and the CLI) can render "data unavailable" without exposing tracebacks.

Exception Hierarchy:
    ReconcileError (base)
    ├── SourceError (errors attributed to one data source)
    │   ├── SourceUnavailableError (network/timeout/5xx/429, retryable)
    │   ├── EntityNotFoundError (confirmed 404, not retryable for that source)
    │   └── MalformedPayloadError (response body unusable)
    ├── MergeInputInvalidError (bad field value, treated as null)
    ├── SyncInProgressError (group sync already running)
    ├── AllSourcesFailedError (every source failed for one identity)
    └── SnapshotError (snapshot read/write failures)

Example:
    >>> from ironsync.core.reconcile.exceptions import SourceUnavailableError
    >>> try:
    ...     raise SourceUnavailableError("secondary", "Request timed out", timeout=10.0)
    ... except SourceUnavailableError as e:
    ...     print(f"Error from {e.source}: {e}")
    ...     print(f"Context: {e.context}")
"""


class ReconcileError(Exception):
    """
    Base exception for all reconciliation errors.

    Attributes:
        message: Human-readable error message
        context: Optional dictionary of additional context
    """

    def __init__(self, message: str, **context: object) -> None:
        """
        Initialize a reconciliation error with message and context.

        Args:
            message: Human-readable error message
            **context: Additional context as keyword arguments
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Return string representation of the error."""
        return self.message


class SourceError(ReconcileError):
    """
    Base exception for errors raised by a source adapter.

    Attributes:
        source: Name of the source that failed (e.g., "plugin", "wiseoldman")
        message: Human-readable error message
        context: Additional context about the failure
    """

    retryable = False

    def __init__(self, source: str, message: str, **context: object) -> None:
        """
        Initialize a source error.

        Args:
            source: Name of the source that failed
            message: Human-readable error message
            **context: Additional context as keyword arguments
        """
        super().__init__(message, source=source, **context)
        self.source = source

    def __str__(self) -> str:
        """Return string representation with source name."""
        return f"[{self.source}] {self.message}"


class SourceUnavailableError(SourceError):
    """
    The source could not be reached or answered with a server error.

    Covers timeouts, connection failures, 5xx responses and rate limiting.
    The failure says nothing about whether the entity exists, so the next
    cache miss retries.
    """

    retryable = True


class EntityNotFoundError(SourceError):
    """
    The source confirmed that it does not know the requested identity.

    Adapters convert this into a None result; it never reaches the engine.
    """

    def __init__(self, source: str, identity: str, **context: object) -> None:
        super().__init__(source, f"'{identity}' not found", identity=identity, **context)
        self.identity = identity


class MalformedPayloadError(SourceError):
    """
    The source answered, but the body could not be used.

    Raised for invalid JSON or a body of the wrong overall shape. Retryable,
    since a later response may be well-formed.
    """

    retryable = True


class MergeInputInvalidError(ReconcileError):
    """
    A single field from a source had an unusable value.

    Never raised to callers: adapters log it and treat the field as null.

    Attributes:
        source: Source that supplied the field
        field: Field name
    """

    def __init__(self, source: str, field: str, message: str, **context: object) -> None:
        super().__init__(message, source=source, field=field, **context)
        self.source = source
        self.field = field

    def __str__(self) -> str:
        return f"[{self.source}] invalid field '{self.field}': {self.message}"


class SyncInProgressError(ReconcileError):
    """
    A group sync is already running.

    Callers should wait for the current session to finish or poll
    ``engine.session.in_progress``.
    """

    def __init__(self, message: str = "Sync already in progress", **context: object) -> None:
        super().__init__(message, **context)


class AllSourcesFailedError(ReconcileError):
    """
    Every consulted source failed for one identity.

    Attributes:
        identity: Identity that could not be reconciled
        errors: Per-source errors, in priority order
    """

    def __init__(self, identity: str, errors: list[SourceError]) -> None:
        sources = ", ".join(e.source for e in errors) or "none"
        super().__init__(
            f"All sources failed for '{identity}' ({sources})",
            identity=identity,
            errors=[str(e) for e in errors],
        )
        self.identity = identity
        self.errors = errors


class SnapshotError(ReconcileError):
    """
    Exception for snapshot storage errors.

    Raised when reading or writing the cache snapshot fails due to file I/O
    errors, permission issues, or data corruption.
    """


__all__ = [
    "ReconcileError",
    "SourceError",
    "SourceUnavailableError",
    "EntityNotFoundError",
    "MalformedPayloadError",
    "MergeInputInvalidError",
    "SyncInProgressError",
    "AllSourcesFailedError",
    "SnapshotError",
]
