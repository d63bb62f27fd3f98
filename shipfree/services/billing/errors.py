"""Error taxonomy for webhook ingestion and reconciliation."""

from __future__ import annotations


class BillingError(RuntimeError):
    """Base exception for the billing pipeline."""

    def __init__(self, message: str, code: str = "BILLING_ERROR") -> None:
        super().__init__(message)
        self.code = code


class InvalidSignature(BillingError):
    """Raised when a webhook payload fails signature verification."""

    def __init__(
        self, message: str = "Invalid signature", code: str = "E_INVALID_SIGNATURE"
    ) -> None:
        super().__init__(message, code)


class MalformedPayload(BillingError):
    """Raised when a verified payload cannot be parsed into an event."""

    def __init__(self, message: str, code: str = "E_MALFORMED_PAYLOAD") -> None:
        super().__init__(message, code)


class TransientEffectFailure(BillingError):
    """Raised by effect handlers for failures worth retrying."""

    def __init__(self, message: str, code: str = "E_TRANSIENT_EFFECT") -> None:
        super().__init__(message, code)


class EmailRejected(BillingError):
    """Raised when the mail server permanently refuses a message."""

    def __init__(self, message: str, code: str = "E_EMAIL_REJECTED") -> None:
        super().__init__(message, code)


class ConfigurationError(BillingError):
    """Raised when secrets or credentials required for a request are missing."""

    def __init__(self, message: str, code: str = "E_CONFIGURATION") -> None:
        super().__init__(message, code)


class PersistenceError(BillingError):
    """Raised when the billing store fails to read or write."""

    def __init__(self, message: str, code: str = "E_PERSISTENCE") -> None:
        super().__init__(message, code)


class SubjectConflict(PersistenceError):
    """Raised when two writers create the same subject concurrently."""

    def __init__(self, message: str, code: str = "E_SUBJECT_CONFLICT") -> None:
        super().__init__(message, code)


class CheckoutError(BillingError):
    """Raised when a provider refuses to create a checkout session."""

    def __init__(self, message: str, code: str = "E_CHECKOUT") -> None:
        super().__init__(message, code)
