from __future__ import annotations


class AnalysisValidationError(ValueError):
    """Input rejected before any provider call (too short, empty, no analysis yet)."""

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message)
        self.field_name = field_name
