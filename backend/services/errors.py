"""Service-layer exceptions. Routes translate these into HTTP responses."""
from typing import Optional


class NotFoundError(LookupError):
    """Requested record does not exist."""


class ForbiddenError(PermissionError):
    """Caller is authenticated but does not own the record."""


class RuleViolation(ValueError):
    """Business rule failed; carries a stable error code for clients."""

    def __init__(self, error_code: str, message: Optional[str] = None):
        self.error_code = error_code
        self.message = message or error_code.replace("_", " ").capitalize()
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"error_code": self.error_code, "message": self.message}
