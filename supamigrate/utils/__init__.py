"""
Utilities module for Supamigrate.

This module contains logging setup and helper functions used
throughout the application.
"""

from supamigrate.utils.helpers import (
    atomic_write_bytes,
    atomic_write_text,
    backup_timestamp,
    calculate_file_checksum,
    format_bytes,
    format_duration,
    fsync_directory,
    fsync_file,
    safe_object_path,
)
from supamigrate.utils.logging import (
    SecretRedactingFilter,
    StructuredFormatter,
    get_logger,
    redact,
    register_secrets,
    setup_logging,
)

__all__ = [
    # Helper functions
    "atomic_write_bytes",
    "atomic_write_text",
    "backup_timestamp",
    "calculate_file_checksum",
    "format_bytes",
    "format_duration",
    "fsync_directory",
    "fsync_file",
    "safe_object_path",
    # Logging utilities
    "SecretRedactingFilter",
    "StructuredFormatter",
    "get_logger",
    "redact",
    "register_secrets",
    "setup_logging",
]
