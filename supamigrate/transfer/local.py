"""
Archive-backed object store.

Exposes the ``storage/`` directory of a backup archive as an ObjectStore:
one sub-directory per bucket, files laid out by object key. Writes go to a
temporary file in the target directory and are renamed into place, so an
interrupted run never leaves a truncated object behind. File I/O runs in
worker threads so transfers sharing the event loop keep moving.
"""

import asyncio
import mimetypes
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Dict, Iterable, List, Optional, Tuple, Union

from supamigrate.core.exceptions import BucketNotFoundError, PermanentTransferError
from supamigrate.transfer.base import BucketInfo, ObjectReader, ObjectStat, ObjectStore, TransferObject
from supamigrate.utils.helpers import safe_object_path

TEMP_PREFIX = ".supamigrate-"


def _sync_and_close(f) -> None:
    f.flush()
    os.fsync(f.fileno())
    f.close()


class _FileReader(ObjectReader):
    def __init__(self, stat: ObjectStat, path: Path):
        super().__init__(stat)
        self._path = path

    async def iter_chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        f = await asyncio.to_thread(open, self._path, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(f.read, chunk_size)
                if not chunk:
                    return
                yield chunk
        finally:
            f.close()


class ArchiveObjectStore(ObjectStore):
    """ObjectStore over a local directory tree."""

    def __init__(
        self,
        root: Path,
        buckets: Optional[Iterable[BucketInfo]] = None,
        bucket_paths: Optional[Dict[str, Path]] = None
    ):
        super().__init__()
        self.root = Path(root)
        self.name = str(self.root)
        self._known: Dict[str, BucketInfo] = {b.name: b for b in (buckets or [])}
        # buckets unpacked somewhere other than root/<bucket>
        self._paths: Dict[str, Path] = {name: Path(p) for name, p in (bucket_paths or {}).items()}

    def bucket_path(self, bucket: str) -> Path:
        if bucket in self._paths:
            return self._paths[bucket]
        try:
            return safe_object_path(self.root, bucket)
        except ValueError as e:
            raise PermanentTransferError(f"Invalid bucket name: {e}")

    def _object_path(self, bucket: str, key: str) -> Path:
        try:
            return safe_object_path(self.bucket_path(bucket), key)
        except ValueError as e:
            raise PermanentTransferError(str(e))

    @property
    def bucket_infos(self) -> List[BucketInfo]:
        return sorted(self._known.values(), key=lambda b: b.name)

    async def list_buckets(self) -> List[BucketInfo]:
        found = dict(self._known)
        if self.root.is_dir():
            for entry in sorted(self.root.iterdir()):
                if entry.is_dir() and entry.name not in found:
                    found[entry.name] = BucketInfo(name=entry.name)
        return sorted(found.values(), key=lambda b: b.name)

    async def ensure_bucket(self, bucket: BucketInfo) -> bool:
        path = self.bucket_path(bucket.name)
        created = not path.exists()
        path.mkdir(parents=True, exist_ok=True)
        self._known[bucket.name] = bucket
        return created

    async def list_page(
        self,
        bucket: str,
        prefix: str,
        offset: int,
        limit: int
    ) -> Tuple[List[TransferObject], List[str]]:
        bucket_dir = self.bucket_path(bucket)
        if not bucket_dir.is_dir():
            raise BucketNotFoundError(f"Bucket directory not found: {bucket_dir}", status_code=404)
        directory = self._object_path(bucket, prefix.rstrip("/")) if prefix else bucket_dir
        if not directory.is_dir():
            return [], []

        entries = sorted(
            e for e in directory.iterdir() if not e.name.startswith(TEMP_PREFIX)
        )
        objects: List[TransferObject] = []
        folders: List[str] = []
        for entry in entries[offset:offset + limit]:
            if entry.is_dir():
                folders.append(f"{prefix}{entry.name}/")
            else:
                objects.append(TransferObject(
                    bucket=bucket,
                    key=f"{prefix}{entry.name}",
                    size=entry.stat().st_size,
                    content_type=mimetypes.guess_type(entry.name)[0],
                ))
        return objects, folders

    async def stat(self, bucket: str, key: str) -> Optional[ObjectStat]:
        path = self._object_path(bucket, key)
        if not path.is_file():
            return None
        return ObjectStat(size=path.stat().st_size, content_type=mimetypes.guess_type(path.name)[0])

    @asynccontextmanager
    async def open_read(self, bucket: str, key: str) -> AsyncIterator[ObjectReader]:
        path = self._object_path(bucket, key)
        if not path.is_file():
            raise PermanentTransferError(f"Object not found in archive: {bucket}/{key}", status_code=404)
        stat = ObjectStat(size=path.stat().st_size, content_type=mimetypes.guess_type(path.name)[0])
        yield _FileReader(stat, path)

    async def write(
        self,
        bucket: str,
        key: str,
        data: Union[bytes, AsyncIterable[bytes]],
        size: int,
        content_type: Optional[str] = None,
        upsert: bool = True
    ) -> None:
        path = self._object_path(bucket, key)
        if not upsert and path.exists():
            raise PermanentTransferError(f"Object already exists: {bucket}/{key}", status_code=409)
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise PermanentTransferError(f"Cannot create directory for {bucket}/{key}: {e}")

        fd, tmp_name = await asyncio.to_thread(tempfile.mkstemp, dir=path.parent, prefix=TEMP_PREFIX)
        try:
            f = os.fdopen(fd, "wb")
            try:
                if isinstance(data, (bytes, bytearray)):
                    await asyncio.to_thread(f.write, data)
                else:
                    async for chunk in data:
                        await asyncio.to_thread(f.write, chunk)
                await asyncio.to_thread(_sync_and_close, f)
            finally:
                f.close()
            await asyncio.to_thread(os.replace, tmp_name, path)
        except OSError as e:
            self._discard(tmp_name)
            raise PermanentTransferError(f"Cannot write {bucket}/{key}: {e}")
        except BaseException:
            self._discard(tmp_name)
            raise

    @staticmethod
    def _discard(tmp_name: str) -> None:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
