"""
Document workflow exceptions.

Synchronous errors (validation, transitions, public access) are returned to
the caller and never retried. ``TransientIOFailure`` is the only error the
job runner retries.
"""

from typing import Optional


class DocflowError(Exception):
    """Base exception for the document workflow."""

    code = "error"

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(DocflowError):
    """Bad input from the caller."""

    code = "validation_error"


class InvalidArgument(ValidationError):
    """An operation argument is outside the accepted domain (e.g. unknown section type)."""

    code = "invalid_argument"


class NotFound(DocflowError):
    code = "not_found"


class InvalidTransition(DocflowError):
    """
    Raised when an action is not allowed from the document's current status.

    The current status is exposed so the UI can re-sync.
    """

    code = "invalid_transition"

    def __init__(self, message: str, current_status: str, action: Optional[str] = None):
        self.current_status = current_status
        self.action = action
        super().__init__(message, {"current_status": current_status, "action": action})


class StaleDocument(InvalidTransition):
    """The document changed between load and transition (version check lost)."""

    code = "stale_document"


class AccessError(DocflowError):
    """
    Base for public link failures.

    Subclasses exist for logging and tests only; the HTTP layer renders all of
    them with one generic message.
    """

    code = "link_invalid"


class AccessNotFound(AccessError):
    pass


class AccessExpired(AccessError):
    pass


class AccessRevoked(AccessError):
    pass


class TransientIOFailure(DocflowError):
    """A collaborator (renderer, storage, SMTP, gateway) is temporarily unavailable."""

    code = "service_unavailable"


class PermanentFailure(DocflowError):
    """A job exhausted its attempts or hit an unrecoverable error."""

    code = "permanent_failure"


class ImmutableEventError(DocflowError):
    code = "immutable_event"
