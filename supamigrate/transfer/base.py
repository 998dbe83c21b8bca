"""
Base classes for storage object transfers.

This module defines the object-store interface the transfer engine works
against, and the data structures describing objects, tasks and results.
Both a live project's storage API and a local backup archive implement
ObjectStore, so one engine serves migrate, backup and restore.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncContextManager, AsyncIterable, AsyncIterator, Dict, List, Optional, Tuple, Union
import logging
import re

logger = logging.getLogger(__name__)

_MD5_HEX = re.compile(r"^[0-9a-f]{32}$")


def normalize_etag(etag: Optional[str]) -> Optional[str]:
    """Strip quotes and weak-validator prefix from an ETag."""
    if not etag:
        return None
    etag = etag.strip()
    if etag.startswith("W/"):
        etag = etag[2:]
    return etag.strip('"').lower() or None


def is_md5_etag(etag: Optional[str]) -> bool:
    """Whether an ETag is a plain MD5 digest (multipart ETags are not)."""
    return bool(etag) and bool(_MD5_HEX.match(etag))


class TransferAction(str, Enum):
    """Direction of a transfer task relative to the local machine."""
    COPY = "copy"
    DOWNLOAD = "download"
    UPLOAD = "upload"


class TaskOutcome(str, Enum):
    """Terminal state of one transfer task."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Why an object failed."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    INTEGRITY = "integrity"
    COLLISION = "collision"
    CANCELLED = "cancelled"
    BUCKET = "bucket"
    ERROR = "error"


@dataclass(frozen=True)
class BucketInfo:
    """A storage bucket."""
    name: str
    public: bool = False


@dataclass(frozen=True)
class TransferObject:
    """One object enumerated from the source. Identity is (bucket, key)."""
    bucket: str
    key: str
    size: int = 0
    etag: Optional[str] = None
    content_type: Optional[str] = None
    index: int = -1

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.bucket, self.key)

    def __str__(self) -> str:
        return f"{self.bucket}/{self.key}"


@dataclass(frozen=True)
class ObjectStat:
    """Metadata of an object as reported by a store."""
    size: int
    etag: Optional[str] = None
    content_type: Optional[str] = None


@dataclass
class TransferTask:
    """One unit of copy work and its outcome."""
    object: TransferObject
    action: TransferAction = TransferAction.COPY
    attempts: int = 0
    outcome: TaskOutcome = TaskOutcome.PENDING
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None
    bytes_transferred: int = 0


@dataclass(frozen=True)
class ObjectFailure:
    """A failed object, itemized in the final report."""
    bucket: str
    key: str
    index: int
    kind: FailureKind
    message: str

    @property
    def identity(self) -> str:
        return f"{self.bucket}/{self.key}"


@dataclass
class TransferResult:
    """Aggregate result of one engine run."""
    enumerated: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    bytes_transferred: int = 0
    buckets: List[str] = field(default_factory=list)
    created_buckets: List[str] = field(default_factory=list)
    bucket_errors: Dict[str, str] = field(default_factory=dict)
    failures: List[ObjectFailure] = field(default_factory=list)
    cancelled: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.bucket_errors and not self.cancelled

    @property
    def counts_consistent(self) -> bool:
        return self.succeeded + self.skipped + self.failed == self.enumerated

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def summary(self) -> str:
        return (
            f"{self.succeeded} succeeded, {self.skipped} skipped, {self.failed} failed "
            f"of {self.enumerated} objects in {len(self.buckets)} buckets"
        )


class ObjectReader(ABC):
    """An open object body."""

    def __init__(self, stat: ObjectStat):
        self.stat = stat

    @abstractmethod
    def iter_chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        """Yield the object body in chunks."""
        pass


class ObjectStore(ABC):
    """
    Abstract base class for object stores.

    Implementations raise TransientTransferError for failures worth another
    attempt and PermanentTransferError for everything else.
    """

    name: str = "store"

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def list_buckets(self) -> List[BucketInfo]:
        pass

    @abstractmethod
    async def ensure_bucket(self, bucket: BucketInfo) -> bool:
        """Create ``bucket`` if missing; return True when it was created."""
        pass

    @abstractmethod
    async def list_page(
        self,
        bucket: str,
        prefix: str,
        offset: int,
        limit: int
    ) -> Tuple[List[TransferObject], List[str]]:
        """
        List one page of entries directly below ``prefix``.

        Returns the objects (with full keys) and the folder prefixes
        (ending in "/") found on the page. A page with fewer than ``limit``
        entries is the last one.
        """
        pass

    @abstractmethod
    async def stat(self, bucket: str, key: str) -> Optional[ObjectStat]:
        """Object metadata, or None when the object does not exist."""
        pass

    @abstractmethod
    def open_read(self, bucket: str, key: str) -> AsyncContextManager[ObjectReader]:
        """Async context manager yielding an ObjectReader."""
        pass

    @abstractmethod
    async def write(
        self,
        bucket: str,
        key: str,
        data: Union[bytes, AsyncIterable[bytes]],
        size: int,
        content_type: Optional[str] = None,
        upsert: bool = True
    ) -> None:
        """Store an object. Readers never observe a partially written object."""
        pass

    async def read_bytes(self, bucket: str, key: str, chunk_size: int = 64 * 1024) -> bytes:
        async with self.open_read(bucket, key) as reader:
            return b"".join([chunk async for chunk in reader.iter_chunks(chunk_size)])

    async def aclose(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
