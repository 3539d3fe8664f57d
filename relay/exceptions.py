# --------------------------- relay/exceptions.py ----------------------------
"""
Relay · Error taxonomy

Every error raised across a service boundary derives from RelayError and
carries the HTTP status the API layer answers with. Materialization failures
have no class here; they are recorded per step and never raised.
"""


class RelayError(Exception):
    """Base class for all Relay errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class WebhookAuthError(RelayError):
    """Invalid, missing or stale webhook signature."""

    status_code = 403


class WebhookConfigError(RelayError):
    """Signature verification is required but no signing key is configured."""

    status_code = 500


class WebhookPayloadError(RelayError):
    """Inbound webhook body could not be parsed."""

    status_code = 400


class ClassificationError(RelayError):
    """LLM call failed or returned output that is not a classification object."""

    status_code = 502


class ReviewNotFoundError(RelayError):
    status_code = 404


class ReviewConflictError(RelayError):
    """Review (or event approval) is already resolved."""

    status_code = 409


class ReviewValidationError(RelayError):
    """Resolve request does not fit the review (unknown option, missing name)."""

    status_code = 400


class SMSError(RelayError):
    status_code = 502
