"""
Custom exception classes for the teller.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class TellerException(Exception):
    """Base exception class for the teller."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(TellerException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(TellerException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ValidationError(TellerException):
    """Raised when request data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(TellerException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class PaymentRequiredError(TellerException):
    """Raised when a paid endpoint is called without a payment reference."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PAYMENT_REQUIRED", details)


class PaymentAlreadyProcessedError(TellerException):
    """Raised when a payment reference has already been queued."""

    def __init__(self, payment_ref: str, details: Optional[Dict[str, Any]] = None):
        self.payment_ref = payment_ref
        super().__init__(
            "Payment already processed",
            "PAYMENT_ALREADY_PROCESSED",
            {"payment_ref": payment_ref, **(details or {})}
        )


class UpstreamUnavailableError(TellerException):
    """Raised when the chain RPC or another upstream cannot be reached."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "UPSTREAM_UNAVAILABLE", details)


class ProvisioningError(TellerException):
    """Raised when a step of account provisioning fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PROVISIONING_FAILED", details)


class LedgerWriteError(TellerException):
    """Raised when a referral payout or points write fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "LEDGER_WRITE_FAILED", details)
