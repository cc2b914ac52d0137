"""
Standardized errors for the overlay agent.

Every failure a command can surface maps to one of the classes below so the
CLI can report a stable ``errorCode`` alongside the message.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class OverlayAgentError(Exception):
    """Base exception for overlay agent errors"""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "UNKNOWN_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(OverlayAgentError):
    """Malformed key, txid, amount or payload"""
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, self.code, details)


class SignatureError(OverlayAgentError):
    """Missing or invalid signature on a message that requires one"""
    code = "SIGNATURE_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, self.code, details)


class PaymentError(OverlayAgentError):
    """Insufficient, invalid or unsettled payment"""
    code = "PAYMENT_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, self.code, details)


class NetworkError(OverlayAgentError):
    """Relay, overlay or explorer unreachable"""
    code = "NETWORK_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None, error_code: Optional[str] = None):
        super().__init__(message, error_code or self.code, details)


class FetchTimeoutError(NetworkError):
    """A single HTTP attempt exceeded its timeout"""
    code = "TIMEOUT_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, details)


class LedgerError(OverlayAgentError):
    """Broadcast rejected, insufficient funds, unconfirmed source"""
    code = "LEDGER_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, self.code, details)


class ConfigurationError(OverlayAgentError):
    """Missing wallet, hook token or other local setup"""
    code = "CONFIG_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, self.code, details)


class NotFoundError(OverlayAgentError):
    """Requested record does not exist"""
    code = "NOT_FOUND"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, self.code, details)


class StateError(OverlayAgentError):
    """Operation not allowed in the record's current state"""
    code = "STATE_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, self.code, details)


class ErrorHandler:
    """Consistent logging and formatting of command failures"""

    @staticmethod
    def log_error(error: Exception, context: str = "", level: str = "error") -> None:
        """Log error with consistent format"""
        log_func = getattr(logger, level, logger.error)

        if isinstance(error, OverlayAgentError):
            log_func(f"[{context}] {error.error_code}: {error.message}")
        else:
            log_func(f"[{context}] {type(error).__name__}: {error}")

    @staticmethod
    def format_error_response(error: Exception) -> dict:
        """Format error for the CLI JSON wrapper"""
        if isinstance(error, OverlayAgentError):
            return {
                "success": False,
                "error": error.message,
                "errorCode": error.error_code,
                "details": error.details,
            }
        return {
            "success": False,
            "error": str(error),
            "errorCode": "INTERNAL_ERROR",
            "details": {},
        }
