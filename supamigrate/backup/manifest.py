"""
Backup manifest model.

The manifest is the authoritative description of a backup archive. It is
the last file written, and every component it lists must exist on disk.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from supamigrate import __version__
from supamigrate.core.exceptions import ArchiveCorruptionError, UnsupportedArchiveVersionError
from supamigrate.models.session import MigrationScope, ScopeMode

FORMAT_VERSION = 1
LEGACY_FORMAT_VERSION = 0
SUPPORTED_VERSIONS = frozenset({LEGACY_FORMAT_VERSION, FORMAT_VERSION})

MANIFEST_FILE = "manifest.json"
LEGACY_METADATA_FILE = "metadata.json"
DATABASE_FILE = "database.sql"
STORAGE_DIR = "storage"
FUNCTIONS_DIR = "functions"


class DatabaseComponent(BaseModel):
    """The SQL dump stored in the archive."""
    file: str
    compressed: bool = False
    transform_mode: Optional[str] = None
    scope_mode: ScopeMode = ScopeMode.FULL
    size_bytes: int = 0
    sha256: Optional[str] = None


class BucketComponent(BaseModel):
    """One bucket's objects, as a directory or a tar.gz artifact."""
    name: str
    public: bool = False
    path: str
    compressed: bool = False
    object_count: int = 0
    size_bytes: int = 0


class FunctionComponent(BaseModel):
    """One edge function bundle directory."""
    slug: str
    name: str
    path: str


class BackupManifest(BaseModel):
    """Versioned description of a backup archive."""
    format_version: int = FORMAT_VERSION
    tool_version: str = __version__
    project_ref: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    scope: MigrationScope = Field(default_factory=MigrationScope)
    compressed: bool = False
    database: Optional[DatabaseComponent] = None
    buckets: List[BucketComponent] = Field(default_factory=list)
    functions: List[FunctionComponent] = Field(default_factory=list)

    @property
    def has_components(self) -> bool:
        return self.database is not None or bool(self.buckets) or bool(self.functions)

    def bucket(self, name: str) -> Optional[BucketComponent]:
        for component in self.buckets:
            if component.name == name:
                return component
        return None

    def referenced_paths(self) -> List[str]:
        paths = []
        if self.database:
            paths.append(self.database.file)
        paths.extend(b.path for b in self.buckets)
        paths.extend(f.path for f in self.functions)
        return paths

    def missing_components(self, root: Path) -> List[str]:
        return [p for p in self.referenced_paths() if not (Path(root) / p).exists()]

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)


def parse_manifest(text: str, source: str = MANIFEST_FILE) -> BackupManifest:
    """Parse manifest JSON, checking the format version before the schema."""
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ArchiveCorruptionError(f"Unreadable manifest {source}: {e}")
    if not isinstance(data, dict):
        raise ArchiveCorruptionError(f"Manifest {source} is not a JSON object")

    version = data.get("format_version")
    if not isinstance(version, int) or version not in SUPPORTED_VERSIONS:
        raise UnsupportedArchiveVersionError(
            f"Unsupported archive format version {version!r} in {source} "
            f"(supported: {sorted(SUPPORTED_VERSIONS)})",
            details={"format_version": version},
        )
    try:
        return BackupManifest.model_validate(data)
    except ValidationError as e:
        raise ArchiveCorruptionError(f"Invalid manifest {source}: {e}")


def manifest_from_legacy(root: Path, text: str) -> BackupManifest:
    """
    Build a manifest for an archive written by earlier releases.

    Those archives carry a flat ``metadata.json`` with scope flags; their
    components are discovered from the directory layout.
    """
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ArchiveCorruptionError(f"Unreadable {LEGACY_METADATA_FILE}: {e}")
    if not isinstance(data, dict) or "project_ref" not in data:
        raise ArchiveCorruptionError(f"{LEGACY_METADATA_FILE} does not describe a backup")

    root = Path(root)
    compressed = bool(data.get("compressed", False))
    schema_only = bool(data.get("schema_only", False))
    database_file = f"{DATABASE_FILE}.gz" if compressed else DATABASE_FILE

    buckets = []
    storage_root = root / STORAGE_DIR
    if data.get("include_storage") and storage_root.is_dir():
        for entry in sorted(storage_root.iterdir()):
            if entry.is_dir():
                buckets.append(BucketComponent(name=entry.name, path=f"{STORAGE_DIR}/{entry.name}"))

    functions = []
    functions_root = root / FUNCTIONS_DIR
    if data.get("include_functions") and functions_root.is_dir():
        for entry in sorted(functions_root.iterdir()):
            if entry.is_dir():
                functions.append(FunctionComponent(slug=entry.name, name=entry.name, path=f"{FUNCTIONS_DIR}/{entry.name}"))

    created_at = data.get("timestamp")
    scope = MigrationScope(
        mode=ScopeMode.SCHEMA_ONLY if schema_only else ScopeMode.FULL,
        include_storage=bool(buckets),
        include_functions=bool(functions),
    )
    try:
        return BackupManifest(
            format_version=LEGACY_FORMAT_VERSION,
            tool_version="legacy",
            project_ref=data["project_ref"],
            created_at=created_at or datetime.now(timezone.utc),
            scope=scope,
            compressed=compressed,
            database=DatabaseComponent(file=database_file, compressed=compressed, scope_mode=scope.mode),
            buckets=buckets,
            functions=functions,
        )
    except ValidationError as e:
        raise ArchiveCorruptionError(f"Invalid {LEGACY_METADATA_FILE}: {e}")
