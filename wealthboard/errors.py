from __future__ import annotations


class ValidationError(ValueError):
    """Raised when an input is rejected before any state change."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def as_field_errors(self) -> dict[str, str]:
        return {self.field or "detail": str(self)}


class DataUnavailableError(LookupError):
    """Raised when a price, snapshot or period the caller asked for does not exist."""
