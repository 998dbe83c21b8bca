"""
Core module for Supamigrate.

This module contains the exception hierarchy and the retry machinery
shared by the transfer and function pipelines.
"""

from supamigrate.core.exceptions import (
    SupamigrateError,
    ConfigurationError,
    ProjectNotFoundError,
    ExternalToolError,
    ToolNotFoundError,
    ToolTimeoutError,
    DumpError,
    RestoreError,
    TransformError,
    TransferError,
    TransientTransferError,
    PermanentTransferError,
    IntegrityMismatchError,
    BucketNotFoundError,
    FunctionsError,
    TransientFunctionsError,
    PermanentFunctionsError,
    ArchiveError,
    ArchiveNotFoundError,
    ArchiveCorruptionError,
    UnsupportedArchiveVersionError,
    CancelledError,
)

__all__ = [
    "SupamigrateError",
    "ConfigurationError",
    "ProjectNotFoundError",
    "ExternalToolError",
    "ToolNotFoundError",
    "ToolTimeoutError",
    "DumpError",
    "RestoreError",
    "TransformError",
    "TransferError",
    "TransientTransferError",
    "PermanentTransferError",
    "IntegrityMismatchError",
    "BucketNotFoundError",
    "FunctionsError",
    "TransientFunctionsError",
    "PermanentFunctionsError",
    "ArchiveError",
    "ArchiveNotFoundError",
    "ArchiveCorruptionError",
    "UnsupportedArchiveVersionError",
    "CancelledError",
]
