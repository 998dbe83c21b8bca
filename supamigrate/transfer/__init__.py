"""
Transfer module for Supamigrate.

Object stores, the bounded-concurrency transfer engine and its progress
aggregation.
"""

from supamigrate.transfer.base import (
    BucketInfo,
    FailureKind,
    ObjectFailure,
    ObjectStat,
    ObjectStore,
    TaskOutcome,
    TransferAction,
    TransferObject,
    TransferResult,
    TransferTask,
)
from supamigrate.transfer.engine import TransferEngine, TransferOptions, match_buckets
from supamigrate.transfer.local import ArchiveObjectStore
from supamigrate.transfer.progress import ProgressCollector, ProgressDelta, TransferProgress
from supamigrate.transfer.storage import StorageClient

__all__ = [
    "BucketInfo",
    "FailureKind",
    "ObjectFailure",
    "ObjectStat",
    "ObjectStore",
    "TaskOutcome",
    "TransferAction",
    "TransferObject",
    "TransferResult",
    "TransferTask",
    "TransferEngine",
    "TransferOptions",
    "match_buckets",
    "ArchiveObjectStore",
    "ProgressCollector",
    "ProgressDelta",
    "TransferProgress",
    "StorageClient",
]
