class LedgerError(Exception):
    """Base error carrying a short machine-readable reason."""

    status_code = 500

    def __init__(self, message: str, reason: str = "error") -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason


class ValidationError(LedgerError, ValueError):
    status_code = 400


class NotFoundError(LedgerError, LookupError):
    status_code = 404

    def __init__(self, entity: str, message: str = "") -> None:
        super().__init__(message or f"{entity.capitalize()} not found", f"{entity}_not_found")
        self.entity = entity


class ConflictError(LedgerError):
    status_code = 409


class ForbiddenError(LedgerError):
    status_code = 403


class StoreError(LedgerError):
    """Persistence failure. Reads are safe to retry when ``retryable`` is set."""

    def __init__(self, message: str, reason: str = "store_failure", retryable: bool = False) -> None:
        super().__init__(message, reason)
        self.retryable = retryable
        self.status_code = 503 if retryable else 500


class AuthenticationError(LedgerError):
    status_code = 401
