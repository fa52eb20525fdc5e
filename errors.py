class BudgetAppError(Exception):
    """Base class for errors that map onto a JSON ``{"message": ...}`` response."""

    status_code = 400
    default_message = "Bad request"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(BudgetAppError):
    status_code = 401
    default_message = "Invalid email or password"


class Unauthenticated(BudgetAppError):
    status_code = 401
    default_message = "Not authenticated"


class NotFound(BudgetAppError):
    status_code = 404
    default_message = "Not found"


class Forbidden(NotFound):
    """The row exists but belongs to another user.

    Subclasses NotFound so callers see exactly the same response either way.
    """


class ValidationError(BudgetAppError):
    status_code = 422
    default_message = "Invalid input"


class EmailTaken(BudgetAppError):
    status_code = 409
    default_message = "Email already registered"


class StoreUnavailable(BudgetAppError):
    status_code = 503
    default_message = "Service temporarily unavailable"
