"""Error taxonomy for admission control and scheduling.

Each error carries the HTTP status and machine code the API layer
reports, so handlers stay a thin mapping.
"""


class StylebookError(Exception):
    """Base class for expected, caller-facing failures."""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RateLimitExceeded(StylebookError):
    """Raised when a sliding window or backoff lockout rejects a caller."""
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class TooBusy(StylebookError):
    """Raised when the concurrency gate has no free permit."""
    status_code = 429
    code = "TOO_BUSY"


class NotFound(StylebookError):
    """Raised when a referenced service, appointment or client is missing."""
    status_code = 404
    code = "NOT_FOUND"


class BusinessRuleError(StylebookError):
    """Raised when the request is well-formed but violates a business rule."""
    status_code = 422
    code = "BUSINESS_RULE"


class SlotConflict(BusinessRuleError):
    code = "SLOT_CONFLICT"


class InvalidTransition(BusinessRuleError):
    code = "INVALID_TRANSITION"


class InvalidPhone(BusinessRuleError):
    code = "INVALID_PHONE"


class InactiveService(BusinessRuleError):
    code = "INACTIVE_SERVICE"


class DuplicatePhone(BusinessRuleError):
    code = "DUPLICATE_PHONE"


class InvalidCredentials(BusinessRuleError):
    code = "INVALID_CREDENTIALS"


class ServiceUnavailable(StylebookError):
    """Raised when an optional external collaborator is not configured."""
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
