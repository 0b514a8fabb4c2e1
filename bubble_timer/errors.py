"""Error taxonomy shared by the stores, the fanout engine and both transports."""

from typing import Any


class AppError(Exception):
    code = "APP_ERROR"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message}


class ValidationError(AppError):
    """Malformed or missing required input."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationError":
        """Build from the first error of a pydantic ValidationError."""
        errors = exc.errors()
        if not errors:
            return cls(str(exc))
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        return cls(first.get("msg", "Invalid value"), field)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.field:
            body["field"] = self.field
        return body


class AuthenticationError(AppError):
    code = "AUTHENTICATION_REQUIRED"
    status_code = 401


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404


class DependencyError(AppError):
    """A store or push gateway call failed where no degraded result makes sense."""

    code = "DEPENDENCY_ERROR"
    status_code = 500

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation
