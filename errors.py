"""
Error taxonomy shared by every layer.

Services raise these; the FastAPI exception handler in main.py renders them
with the normalized error envelope and the status code carried by the class.
"""


class AppError(Exception):
    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str = "An error occurred"):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(AppError):
    status_code = 401
    error_code = "authentication_error"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class InvalidSignatureError(AuthenticationError):
    error_code = "invalid_token"


class AuthorizationError(AppError):
    status_code = 403
    error_code = "authorization_error"


class NotFoundError(AppError):
    status_code = 404
    error_code = "not_found"


class ConflictError(AppError):
    status_code = 409
    error_code = "conflict"


class SignatureError(AppError):
    """Webhook body did not match its HMAC signature."""

    status_code = 400
    error_code = "invalid_signature"


class UpstreamError(AppError):
    """Payment gateway unreachable, timed out, or answered with an error."""

    status_code = 502
    error_code = "upstream_error"


class IdempotentNoop(AppError):
    """Webhook event already processed; acknowledged without state change."""

    status_code = 200
    error_code = "duplicate_event"
