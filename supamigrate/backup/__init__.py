"""
Backup archives: manifest model and on-disk layout.
"""

from supamigrate.backup.archive import ArchiveHandle, ArchiveManager
from supamigrate.backup.manifest import (
    FORMAT_VERSION,
    SUPPORTED_VERSIONS,
    BackupManifest,
    BucketComponent,
    DatabaseComponent,
    FunctionComponent,
)

__all__ = [
    "ArchiveHandle",
    "ArchiveManager",
    "FORMAT_VERSION",
    "SUPPORTED_VERSIONS",
    "BackupManifest",
    "BucketComponent",
    "DatabaseComponent",
    "FunctionComponent",
]
