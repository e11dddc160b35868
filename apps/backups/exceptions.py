"""
Exception hierarchy for the backup system.

Failures on the artifact-creation path (dump, archive) are fatal to a run.
Upload and retention failures are recorded but never fail an otherwise
successful backup. Restore failures are always fatal.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for all backup and restore failures."""

    pass


class DumpFailure(BackupError):
    """Raised when the database export tool fails."""

    pass


class CompressionFailure(BackupError):
    """Raised when a dump directory cannot be packaged into an artifact."""

    pass


class UploadFailure(BackupError):
    """Raised when an artifact cannot be replicated to one remote destination."""

    def __init__(self, message: str, destination: Optional[str] = None):
        super().__init__(message)
        self.destination = destination


class RetentionCleanupFailure(BackupError):
    """Raised when an evicted artifact's local file cannot be deleted."""

    pass


class IntegrityError(BackupError):
    """
    Raised when a restore precondition is violated.

    The destructive import step is never reached once this is raised.
    """

    pass


class RestoreFailure(BackupError):
    """Raised when the database import tool fails during a restore."""

    pass


class RunInProgress(BackupError):
    """Raised when a trigger is rejected because a conflicting run holds the lock."""

    def __init__(self, message: str, lock_name: Optional[str] = None, holder: Optional[dict] = None):
        super().__init__(message)
        self.lock_name = lock_name
        self.holder = holder or {}


class BackupTimeout(BackupError):
    """Raised when a pipeline phase exceeds its time budget."""

    def __init__(self, message: str, phase: Optional[str] = None, seconds: Optional[float] = None):
        super().__init__(message)
        self.phase = phase
        self.seconds = seconds


class RunAbandoned(BackupError):
    """Recorded on a run or backup whose process died before it finished."""

    pass


class ConfirmationRequired(BackupError):
    """Raised when a destructive restore is requested without acknowledgement."""

    pass


class InvalidTransition(BackupError):
    """Raised when a backup or run would leave a terminal state."""

    pass


def error_type(error: BaseException) -> str:
    """Short name recorded on runs for the failure class (``Timeout`` for timeouts)."""
    if isinstance(error, BackupTimeout):
        return "Timeout"
    if isinstance(error, RunAbandoned):
        return "Abandoned"
    return type(error).__name__
