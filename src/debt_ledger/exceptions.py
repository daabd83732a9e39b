"""Custom exceptions for Debt Ledger."""


class DebtLedgerError(Exception):
    """Base exception for all Debt Ledger errors."""

    pass


class ConfigurationError(DebtLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class ValidationError(DebtLedgerError):
    """Raised when debt or split expense input fails local validation.

    Carries every failed rule, not just the first one.
    """

    def __init__(self, errors: list[str], message: str | None = None):
        self.errors = list(errors)
        super().__init__(message or f"Validation failed: {', '.join(self.errors)}")


class APIError(DebtLedgerError):
    """Base class for ledger API errors.

    The message is always suitable for direct display to the user.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class AuthenticationError(APIError):
    """Raised on 401 responses. Never retried automatically."""

    def __init__(
        self, message: str = "Authentication required. Please log in again."
    ):
        super().__init__(message, status_code=401)


class ResourceNotFoundError(APIError):
    """Raised when the server reports a missing record (404 with a JSON body)."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status_code=404)


class RouteNotFoundError(APIError):
    """Raised when the server has no such route (404 with an HTML body)."""

    def __init__(self, method: str, endpoint: str):
        self.method = method
        self.endpoint = endpoint
        super().__init__(
            f"Server route not found: {method} /api{endpoint}. "
            f"The backend route may not be registered.",
            status_code=404,
        )


class ConflictError(APIError):
    """Raised on 409 responses and on double settlement of a debt."""

    def __init__(self, message: str):
        if not message.startswith("Conflict:"):
            message = f"Conflict: {message}"
        super().__init__(message, status_code=409)


class MalformedResponseError(APIError):
    """Raised when a response body is neither JSON nor an expected empty body."""

    pass


class RequestError(APIError):
    """Raised for any other failed request, including network failures."""

    pass


def error_kind(error: Exception) -> str:
    """Return the taxonomy name reported in result models for an error."""
    return type(error).__name__
