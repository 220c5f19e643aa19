"""
Consent OTP error taxonomy.

Every failure the workflow can raise carries a stable error_code and the HTTP
status the router renders it with.
"""
from typing import Any, Dict, Optional


class ConsentOtpError(Exception):
    error_code = "CONSENT_OTP_ERROR"
    http_status = 400
    default_message = "Consent OTP operation failed"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details or None,
        }


class NotFoundError(ConsentOtpError):
    error_code = "NOT_FOUND"
    http_status = 404
    default_message = "Resource not found"


class ForbiddenError(ConsentOtpError):
    error_code = "FORBIDDEN"
    http_status = 403
    default_message = "You are not allowed to perform this consent action"


class ValidationError(ConsentOtpError):
    error_code = "VALIDATION_ERROR"
    http_status = 400
    default_message = "Invalid request"


class ConflictError(ConsentOtpError):
    error_code = "CONFLICT"
    http_status = 409
    default_message = "Request conflicts with current state"


class ExpiredError(ConsentOtpError):
    error_code = "OTP_EXPIRED"
    http_status = 410
    default_message = "OTP has expired. Please request a new one."


class LockedError(ConsentOtpError):
    error_code = "OTP_BLOCKED"
    http_status = 423
    default_message = "OTP is blocked due to too many attempts. Please request a new one."


class InvalidCodeError(ConsentOtpError):
    error_code = "OTP_INCORRECT"
    http_status = 400
    default_message = "Invalid OTP"

    def __init__(self, attempts_remaining: int, message: Optional[str] = None):
        self.attempts_remaining = attempts_remaining
        if message is None:
            message = f"Invalid OTP. {attempts_remaining} attempt(s) remaining."
        super().__init__(message, {"attempts_remaining": attempts_remaining})


class InternalError(ConsentOtpError):
    error_code = "INTERNAL_ERROR"
    http_status = 500
    default_message = "Failed to record consent. Please try again."
