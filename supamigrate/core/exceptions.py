"""
Custom exceptions for Supamigrate.

This module defines the exception hierarchy used by every pipeline.
Object-level and statement-level problems are never raised out of the
engines; they are recorded as data in the result structures. The classes
below cover configuration, phase-level and archive-level failures, plus the
per-attempt errors the retry machinery classifies.
"""

from typing import Any, Dict, List, Optional


class SupamigrateError(Exception):
    """Base exception class for Supamigrate errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}


class ConfigurationError(SupamigrateError):
    """Raised when configuration cannot be loaded or credentials cannot be resolved."""
    pass


class ProjectNotFoundError(ConfigurationError):
    """Raised when a project alias or reference is not configured."""
    pass


class ExternalToolError(SupamigrateError):
    """Raised when an external dump/restore tool fails."""

    def __init__(self, message: str, stderr: str = "", exit_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.stderr = stderr
        self.exit_code = exit_code


class ToolNotFoundError(ExternalToolError):
    """Raised when a required external tool is not installed."""
    pass


class ToolTimeoutError(ExternalToolError):
    """Raised when an external tool stalls and has to be killed."""
    pass


class DumpError(ExternalToolError):
    """Raised when the dump tool exits unsuccessfully."""
    pass


class RestoreError(ExternalToolError):
    """Raised when the restore tool hits a fatal error."""

    def __init__(self, message: str, failures: Optional[List[Any]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.failures = failures or []


class TransformError(SupamigrateError):
    """Raised when a dump stream cannot be parsed or was already transformed."""

    def __init__(self, message: str, line_number: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.line_number = line_number


class TransferError(SupamigrateError):
    """Raised by a single storage operation."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class TransientTransferError(TransferError):
    """Timeouts, 5xx responses and dropped connections; retried with backoff."""
    pass


class PermanentTransferError(TransferError):
    """403/404/size-limit and similar responses; never retried."""
    pass


class IntegrityMismatchError(TransferError):
    """Raised when the uploaded object does not match the source object."""
    pass


class BucketNotFoundError(PermanentTransferError):
    """Raised when a bucket does not exist on an endpoint."""
    pass


class FunctionsError(SupamigrateError):
    """Raised by management API operations on edge functions."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class TransientFunctionsError(FunctionsError):
    """Retryable management API failure."""
    pass


class PermanentFunctionsError(FunctionsError):
    """Non-retryable management API failure, e.g. a rejected bundle."""
    pass


class ArchiveError(SupamigrateError):
    """Base class for backup archive problems."""
    pass


class ArchiveNotFoundError(ArchiveError):
    """Raised when the archive path does not exist."""
    pass


class ArchiveCorruptionError(ArchiveError):
    """Raised when the manifest is unreadable or references missing files."""
    pass


class UnsupportedArchiveVersionError(ArchiveCorruptionError):
    """Raised when the manifest format version is not supported."""
    pass


class CancelledError(SupamigrateError):
    """Raised when an operation is cancelled by the user."""
    pass
