"""Application-wide exception hierarchy for Activity Harvester.

All custom exceptions subclass ``HarvesterError``, enabling consistent error
handling and structured logging across the application.  The API layer maps
each class to an HTTP status and an error envelope (see ``api/envelope.py``).

Hierarchy::

    HarvesterError
    ├── ValidationError           (field)
    ├── NotFoundError             (entity, entity_id)
    ├── ConflictError             (entity, entity_id, current_status)
    ├── ExtractionError           (url, domain, status_code)
    │   ├── TransientExtractionError
    │   └── TerminalExtractionError
    ├── ConversionError           (issues, details)
    └── PersistenceError          (entity, entity_id)
"""

from __future__ import annotations

from typing import Any


class HarvesterError(Exception):
    """Base class for all Activity Harvester exceptions.

    All application-specific exceptions inherit from this class so that
    callers can catch the entire hierarchy with a single ``except`` clause
    when needed.
    """

    @property
    def kind(self) -> str:
        """Name of the error class, surfaced as ``error_kind`` by the API."""
        return type(self).__name__


# ---------------------------------------------------------------------------
# Input and state exceptions
# ---------------------------------------------------------------------------


class ValidationError(HarvesterError):
    """Raised for malformed or missing input, before any side effect.

    Args:
        message: Human-readable description of the problem.
        field: Name of the offending field, if one can be singled out.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(HarvesterError):
    """Raised when a source, task, analysis, or admin event id is unknown.

    Args:
        entity: Entity kind (e.g. ``"source"``, ``"admin_event"``).
        entity_id: The identifier that could not be resolved.
    """

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity.replace('_', ' ').capitalize()} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(HarvesterError):
    """Raised for duplicates and illegal state transitions.

    Examples are a crawl submission for a URL that is already a source, or
    activating a source that is already active.

    Args:
        message: Human-readable description of the conflict.
        entity: Entity kind involved in the conflict.
        entity_id: Identifier of the conflicting record.
        current_status: Status of the record at the time of the conflict.
    """

    def __init__(
        self,
        message: str,
        entity: str | None = None,
        entity_id: str | None = None,
        current_status: str | None = None,
    ) -> None:
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id
        self.current_status = current_status


# ---------------------------------------------------------------------------
# Extraction exceptions
# ---------------------------------------------------------------------------


class ExtractionError(HarvesterError):
    """Raised when the external extraction collaborator fails.

    The extraction client raises this unclassified; the execution engine
    consults the source's error policy and re-raises it as
    :class:`TransientExtractionError` or :class:`TerminalExtractionError`.

    Args:
        message: Description of the failure as reported by the collaborator.
        url: The URL being extracted.
        domain: Domain of ``url`` (used for policy lookup).
        status_code: HTTP status returned by the collaborator, if any.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        domain: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.domain = domain
        self.status_code = status_code

    @classmethod
    def from_error(cls, error: ExtractionError) -> ExtractionError:
        """Re-wrap *error* as an instance of this class, keeping its context."""
        return cls(
            str(error),
            url=error.url,
            domain=error.domain,
            status_code=error.status_code,
        )


class TransientExtractionError(ExtractionError):
    """An extraction failure worth retrying with backoff."""


class TerminalExtractionError(ExtractionError):
    """An extraction failure that must not be retried (e.g. unresolvable domain)."""


# ---------------------------------------------------------------------------
# Review and persistence exceptions
# ---------------------------------------------------------------------------


class ConversionError(HarvesterError):
    """Raised when a raw admin event cannot be turned into an activity.

    Never fatal to a batch: the conversion service turns it into an issues
    list, and approval surfaces it to the reviewer.

    Args:
        message: Summary of why conversion failed.
        issues: Individual problems found in the raw payload.
        details: Diagnostic data (field mappings, suggestions) for the reviewer.
    """

    def __init__(
        self,
        message: str,
        issues: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.issues = issues or []
        self.details = details or {}


class PersistenceError(HarvesterError):
    """Raised when a store write fails.

    Fails the specific operation only.  Callers must not report success for
    any step that depended on the failed write.

    Args:
        message: Description of the failed write.
        entity: Entity kind being written.
        entity_id: Identifier of the record being written.
    """

    def __init__(
        self,
        message: str,
        entity: str | None = None,
        entity_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id
