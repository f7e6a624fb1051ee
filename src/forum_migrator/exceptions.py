"""
Custom exception classes for the forum migration pipeline.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class ConfigError(MigrationError):
    """Raised when required configuration is missing or malformed."""


class ExtractionError(MigrationError):
    """Raised when the legacy database cannot be read."""


class TargetStoreError(MigrationError):
    """Raised when a request against the target store fails."""

    _DUPLICATE_MARKERS: tuple[str, ...] = (
        "already exists",
        "already been registered",
        "duplicate",
        "email_exists",
    )

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message: str = message
        self.status: int | None = status

    @property
    def is_duplicate(self) -> bool:
        """Whether the error reports a record that already exists."""
        lowered = self.message.lower()
        return any(marker in lowered for marker in self._DUPLICATE_MARKERS)
