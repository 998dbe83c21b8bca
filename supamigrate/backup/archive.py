"""
Backup archive layout and lifecycle.

An archive is a directory::

    <root>/
        manifest.json
        database.sql[.gz]
        storage/<bucket>/...          (or storage/<bucket>.tar.gz)
        functions/<slug>/metadata.json
        functions/<slug>/src/...

Artifacts are written first; the manifest is written atomically once
everything it references is on disk. A directory without a readable
manifest is never treated as a usable archive.
"""

import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import List, Optional

from supamigrate.backup.manifest import (
    DATABASE_FILE,
    FUNCTIONS_DIR,
    LEGACY_METADATA_FILE,
    MANIFEST_FILE,
    STORAGE_DIR,
    BackupManifest,
    BucketComponent,
    manifest_from_legacy,
    parse_manifest,
)
from supamigrate.core.exceptions import ArchiveCorruptionError, ArchiveError, ArchiveNotFoundError
from supamigrate.utils.helpers import atomic_write_text, fsync_directory, fsync_file

logger = logging.getLogger(__name__)

BUCKET_ARCHIVE_SUFFIX = ".tar.gz"


class ArchiveHandle:
    """A backup archive being written."""

    def __init__(self, root: Path, project_ref: str):
        self.root = Path(root)
        self.project_ref = project_ref

    def database_path(self, compressed: bool = False) -> Path:
        return self.root / (f"{DATABASE_FILE}.gz" if compressed else DATABASE_FILE)

    @property
    def storage_dir(self) -> Path:
        return self.root / STORAGE_DIR

    @property
    def functions_dir(self) -> Path:
        return self.root / FUNCTIONS_DIR

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_FILE

    def relative(self, path: Path) -> str:
        return Path(path).relative_to(self.root).as_posix()

    def compress_bucket(self, name: str) -> Optional[Path]:
        """
        Pack ``storage/<name>`` into ``storage/<name>.tar.gz``.

        Returns the artifact path, or None when packing failed; in that case
        the plain directory is kept and stays usable.
        """
        source = self.storage_dir / name
        target = self.storage_dir / f"{name}{BUCKET_ARCHIVE_SUFFIX}"
        fd, tmp_name = tempfile.mkstemp(dir=self.storage_dir, prefix=f".{name}.", suffix=".tmp")
        os.close(fd)
        try:
            with tarfile.open(tmp_name, "w:gz") as archive:
                for path in sorted(source.rglob("*")):
                    if path.is_file():
                        archive.add(path, arcname=path.relative_to(source).as_posix(), recursive=False)
            fsync_file(tmp_name)
            os.replace(tmp_name, target)
        except (OSError, tarfile.TarError) as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            logger.warning(f"Could not compress bucket {name}, keeping directory: {e}")
            return None

        shutil.rmtree(source)
        fsync_directory(self.storage_dir)
        logger.debug(f"Compressed bucket {name} into {target.name}")
        return target

    def finalize(self, manifest: BackupManifest) -> Path:
        """Flush all artifacts, then write the manifest as the last step."""
        missing = manifest.missing_components(self.root)
        if missing:
            raise ArchiveError(f"Refusing to write manifest, missing artifacts: {', '.join(missing)}")

        for relative in manifest.referenced_paths():
            path = self.root / relative
            if path.is_file():
                fsync_file(path)
            else:
                for file_path in path.rglob("*"):
                    if file_path.is_file():
                        fsync_file(file_path)
        for directory in (self.storage_dir, self.functions_dir):
            if directory.is_dir():
                fsync_directory(directory)

        atomic_write_text(self.manifest_path, manifest.to_json())
        logger.info(f"Backup manifest written to {self.manifest_path}")
        return self.manifest_path


class ArchiveManager:
    """Creates, opens and unpacks backup archives."""

    @staticmethod
    def create(root_dir: Path, project_ref: str) -> ArchiveHandle:
        root = Path(root_dir)
        if (root / MANIFEST_FILE).exists():
            raise ArchiveError(f"{root} already contains a backup")
        root.mkdir(parents=True, exist_ok=True)
        (root / STORAGE_DIR).mkdir(exist_ok=True)
        (root / FUNCTIONS_DIR).mkdir(exist_ok=True)
        logger.info(f"Writing backup of {project_ref} to {root}")
        return ArchiveHandle(root, project_ref)

    @staticmethod
    def open(path: Path) -> BackupManifest:
        """
        Read and validate the manifest of the archive at ``path``.

        Every referenced artifact must exist; nothing about the archive is
        trusted beyond what the manifest says.
        """
        root = Path(path)
        if not root.exists():
            raise ArchiveNotFoundError(f"Backup not found: {root}")
        if not root.is_dir():
            raise ArchiveCorruptionError(f"Backup path is not a directory: {root}")

        manifest_path = root / MANIFEST_FILE
        legacy_path = root / LEGACY_METADATA_FILE
        try:
            if manifest_path.is_file():
                manifest = parse_manifest(manifest_path.read_text(encoding="utf-8"), str(manifest_path))
            elif legacy_path.is_file():
                manifest = manifest_from_legacy(root, legacy_path.read_text(encoding="utf-8"))
            else:
                raise ArchiveCorruptionError(f"No {MANIFEST_FILE} in {root}; the backup is incomplete")
        except OSError as e:
            raise ArchiveCorruptionError(f"Cannot read manifest in {root}: {e}")

        missing = manifest.missing_components(root)
        if missing:
            raise ArchiveCorruptionError(
                f"Backup {root} is missing referenced artifacts: {', '.join(missing)}",
                details={"missing": missing},
            )
        return manifest

    @staticmethod
    def extract_bucket(root: Path, component: BucketComponent, destination: Path) -> Path:
        """
        Return a directory holding the objects of one archived bucket.

        Plain directories are used in place; tar.gz artifacts are unpacked
        into ``destination/<bucket>``.
        """
        source = Path(root) / component.path
        if not component.compressed:
            return source

        target = Path(destination) / component.name
        target.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(source, "r:gz") as archive:
                archive.extractall(target, members=_safe_members(archive, component.name), filter="data")
        except (OSError, tarfile.TarError, EOFError) as e:
            raise ArchiveCorruptionError(f"Cannot unpack bucket {component.name} from {source}: {e}")
        return target


def _safe_members(archive: tarfile.TarFile, bucket: str) -> List[tarfile.TarInfo]:
    members = []
    for member in archive.getmembers():
        name = PurePosixPath(member.name)
        if name.is_absolute() or ".." in name.parts:
            raise ArchiveCorruptionError(f"Unsafe path {member.name!r} in bucket archive {bucket}")
        if member.isfile() or member.isdir():
            members.append(member)
    return members
