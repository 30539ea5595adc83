"""Exception hierarchy for dbtools"""

from typing import Any


class DBToolsError(Exception):
    """Base exception for all fatal dbtools conditions"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DBToolsError):
    """Raised when settings are missing or invalid."""


class AlreadyLocked(DBToolsError):
    """Raised when another instance holds the lock."""

    def __init__(self, message: str, holder: str | None = None):
        super().__init__(message, {"holder": holder or "unknown"})
        self.holder = holder


class ToolNotFound(DBToolsError):
    """Raised when a required external tool is missing and has no fallback."""


class InsufficientSpace(DBToolsError):
    """Raised when the backup directory cannot hold the estimated backup."""


class NoDatabasesFound(DBToolsError):
    """Raised when no user databases can be enumerated."""


class InsecureKeyPermissions(DBToolsError):
    """Raised when the encryption key file is readable by group or others."""


class PipelineError(DBToolsError):
    """Raised when an artifact cannot be encoded or decoded."""


class DecryptionError(PipelineError):
    """Raised when an encrypted artifact is truncated, tampered or keyed wrongly."""


class SegmentNotFound(DBToolsError):
    """Raised when the PITR start segment is not among the available binlogs."""


class InvalidBoundary(DBToolsError):
    """Raised when a PITR stop time or stop position cannot be parsed."""


class ServerControlError(DBToolsError):
    """Raised when the database service cannot be stopped or started."""


class BackupError(DBToolsError):
    """Raised when a backup step fails as a whole."""


class RestoreError(DBToolsError):
    """Raised when a restore cannot proceed."""


class MySQLError(DBToolsError):
    """Raised when a statement sent through the mysql client fails."""
