"""
Storage transfer engine.

Copies every object of the selected buckets from one ObjectStore to
another. Objects are enumerated up front, then a fixed pool of worker
tasks pulls them from one shared queue. Object-level problems never
escape the engine: each one ends up as an ObjectFailure in the result.
"""

import asyncio
import fnmatch
import hashlib
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from supamigrate.core.error_handler import RetryConfig, RetryHandler, create_transfer_retry_config
from supamigrate.core.exceptions import (
    IntegrityMismatchError,
    PermanentTransferError,
    TransferError,
    TransientTransferError,
)
from supamigrate.models.config import CollisionPolicy, DefaultsConfig
from supamigrate.transfer.base import (
    BucketInfo,
    FailureKind,
    ObjectFailure,
    ObjectStore,
    TaskOutcome,
    TransferAction,
    TransferObject,
    TransferResult,
    TransferTask,
    is_md5_etag,
    normalize_etag,
)
from supamigrate.transfer.progress import ProgressCallback, ProgressCollector, ProgressDelta

logger = logging.getLogger(__name__)


@dataclass
class TransferOptions:
    """Tuning knobs for one engine run."""
    concurrency: int = 4
    retry: RetryConfig = field(default_factory=create_transfer_retry_config)
    listing_attempts: int = 3
    page_size: int = 100
    stream_threshold: int = 8 * 1024 * 1024
    chunk_size: int = 256 * 1024
    skip_existing: bool = False
    collision_policy: CollisionPolicy = CollisionPolicy.OVERWRITE
    verify_integrity: bool = True
    action: TransferAction = TransferAction.COPY

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.listing_attempts < 1:
            raise ValueError("listing_attempts must be at least 1")

    @classmethod
    def from_defaults(cls, defaults: DefaultsConfig, **overrides) -> "TransferOptions":
        options = cls(
            concurrency=defaults.parallel_transfers,
            retry=create_transfer_retry_config(defaults.retry_attempts, defaults.retry_base_delay),
            listing_attempts=defaults.listing_attempts,
            stream_threshold=defaults.stream_threshold,
            skip_existing=defaults.skip_existing,
            collision_policy=defaults.collision_policy,
        )
        return replace(options, **overrides) if overrides else options


def match_buckets(buckets: Sequence[BucketInfo], bucket_filter: Optional[Sequence[str]]) -> List[BucketInfo]:
    """Select buckets by exact name or fnmatch pattern; no filter selects all."""
    if not bucket_filter:
        return sorted(buckets, key=lambda b: b.name)
    return sorted(
        (b for b in buckets if any(fnmatch.fnmatchcase(b.name, pattern) for pattern in bucket_filter)),
        key=lambda b: b.name
    )


class TransferEngine:
    """Bounded-concurrency object copier between two stores."""

    def __init__(
        self,
        source: ObjectStore,
        target: ObjectStore,
        options: Optional[TransferOptions] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None
    ):
        self.source = source
        self.target = target
        self.options = options or TransferOptions()
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event or asyncio.Event()
        self.retry_handler = RetryHandler(logger)
        self._listing_retry = replace(
            self.options.retry,
            max_attempts=self.options.listing_attempts,
            retryable_exceptions=[TransientTransferError],
        )

    def cancel(self) -> None:
        logger.info("Transfer cancellation requested")
        self.cancel_event.set()

    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def transfer(self, bucket_filter: Optional[Sequence[str]] = None) -> TransferResult:
        """
        Copy all objects of the matching buckets.

        Raises TransferError only when the source bucket list itself cannot
        be read; everything below that is recorded in the result.
        """
        result = TransferResult(started_at=datetime.now(timezone.utc))
        collector = ProgressCollector(self.progress_callback)
        collector.start()
        try:
            buckets = await self._list_source_buckets(bucket_filter)
            result.buckets = [b.name for b in buckets]

            objects: List[TransferObject] = []
            for bucket in buckets:
                bucket_objects = await self._enumerate_bucket(bucket, result)
                if bucket_objects is None:
                    continue
                start = len(objects)
                indexed = [replace(o, index=start + i) for i, o in enumerate(bucket_objects)]
                objects.extend(indexed)
                if not await self._prepare_target_bucket(bucket, result):
                    # counted and itemized, never attempted
                    message = result.bucket_errors[bucket.name]
                    for obj in indexed:
                        self._record(result, self._failed_task(obj, FailureKind.BUCKET, message))

            pending = [o for o in objects if o.bucket not in result.bucket_errors]
            result.enumerated = len(objects)
            collector.report(ProgressDelta(
                objects_total=len(objects),
                bytes_total=sum(max(o.size, 0) for o in objects),
                objects_failed=len(objects) - len(pending),
            ))

            logger.info(
                f"Transferring {len(pending)} objects from {len(buckets)} buckets "
                f"with {self.options.concurrency} workers"
            )
            tasks = await self._run_pool(pending, collector)
            for task in tasks:
                self._record(result, task)
        finally:
            await collector.stop()

        result.failures.sort(key=lambda f: f.index)
        result.cancelled = self.is_cancelled()
        result.finished_at = datetime.now(timezone.utc)
        logger.info(f"Transfer finished: {result.summary()}")
        return result

    async def _list_source_buckets(self, bucket_filter: Optional[Sequence[str]]) -> List[BucketInfo]:
        buckets = await self.retry_handler.retry_with_backoff(
            self.source.list_buckets, retry_config=self._listing_retry
        )
        selected = match_buckets(buckets, bucket_filter)
        if bucket_filter:
            for pattern in bucket_filter:
                if not any(fnmatch.fnmatchcase(b.name, pattern) for b in buckets):
                    logger.warning(f"No bucket matches {pattern!r}")
        return selected

    async def _list_page(self, bucket: str, prefix: str, offset: int) -> Tuple[List[TransferObject], List[str]]:
        return await self.retry_handler.retry_with_backoff(
            self.source.list_page,
            bucket,
            prefix,
            offset,
            self.options.page_size,
            retry_config=self._listing_retry,
        )

    async def _enumerate_bucket(self, bucket: BucketInfo, result: TransferResult) -> Optional[List[TransferObject]]:
        """All objects of one bucket, or None when listing failed for good."""
        objects: List[TransferObject] = []
        prefixes = [""]
        try:
            while prefixes:
                prefix = prefixes.pop(0)
                offset = 0
                while True:
                    page_objects, folders = await self._list_page(bucket.name, prefix, offset)
                    objects.extend(page_objects)
                    prefixes.extend(folders)
                    if len(page_objects) + len(folders) < self.options.page_size:
                        break
                    offset += self.options.page_size
        except TransferError as e:
            result.bucket_errors[bucket.name] = f"Listing failed: {e}"
            logger.error(f"Enumeration of bucket {bucket.name} failed: {e}")
            return None

        objects.sort(key=lambda o: o.key)
        logger.info(f"Bucket {bucket.name}: {len(objects)} objects")
        return objects

    async def _prepare_target_bucket(self, bucket: BucketInfo, result: TransferResult) -> bool:
        try:
            created = await self.retry_handler.retry_with_backoff(
                self.target.ensure_bucket, bucket, retry_config=self._listing_retry
            )
        except TransferError as e:
            result.bucket_errors[bucket.name] = f"Cannot create bucket on target: {e}"
            logger.error(f"Cannot create bucket {bucket.name} on target: {e}")
            return False
        if created:
            result.created_buckets.append(bucket.name)
        return True

    def _failed_task(self, obj: TransferObject, kind: FailureKind, message: str) -> TransferTask:
        return TransferTask(
            object=obj,
            action=self.options.action,
            outcome=TaskOutcome.FAILED,
            failure_kind=kind,
            error=message,
        )

    @staticmethod
    def _record(result: TransferResult, task: TransferTask) -> None:
        if task.outcome == TaskOutcome.SUCCEEDED:
            result.succeeded += 1
            result.bytes_transferred += task.bytes_transferred
        elif task.outcome == TaskOutcome.SKIPPED:
            result.skipped += 1
        else:
            result.failed += 1
            result.failures.append(ObjectFailure(
                bucket=task.object.bucket,
                key=task.object.key,
                index=task.object.index,
                kind=task.failure_kind or FailureKind.ERROR,
                message=task.error or "unknown error",
            ))

    async def _run_pool(self, objects: List[TransferObject], collector: ProgressCollector) -> List[TransferTask]:
        queue: asyncio.Queue = asyncio.Queue()
        for obj in objects:
            queue.put_nowait(obj)
        finished: List[TransferTask] = []

        async def worker(worker_id: int):
            while True:
                try:
                    obj = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if self.is_cancelled():
                    task = self._failed_task(obj, FailureKind.CANCELLED, "cancelled before start")
                else:
                    task = await self._process(obj)
                finished.append(task)
                collector.report(ProgressDelta(
                    objects_succeeded=int(task.outcome == TaskOutcome.SUCCEEDED),
                    objects_skipped=int(task.outcome == TaskOutcome.SKIPPED),
                    objects_failed=int(task.outcome == TaskOutcome.FAILED),
                    bytes_transferred=task.bytes_transferred,
                    current=str(obj),
                ))

        workers = [
            asyncio.create_task(worker(i))
            for i in range(min(self.options.concurrency, max(len(objects), 1)))
        ]
        await asyncio.gather(*workers)
        return finished

    async def _process(self, obj: TransferObject) -> TransferTask:
        task = TransferTask(object=obj, action=self.options.action)
        try:
            existing = None
            if self.options.skip_existing or self.options.collision_policy == CollisionPolicy.FAIL:
                existing = await self.retry_handler.retry_with_backoff(
                    self.target.stat, obj.bucket, obj.key, retry_config=self.options.retry
                )
            if existing is not None and existing.size == obj.size and self.options.skip_existing:
                task.outcome = TaskOutcome.SKIPPED
                return task
            if existing is not None and existing.size != obj.size \
                    and self.options.collision_policy == CollisionPolicy.FAIL:
                return self._fail(task, FailureKind.COLLISION, (
                    f"target already holds {obj} with size {existing.size}, source size {obj.size}"
                ))

            try:
                task.bytes_transferred = await self._copy_with_retry(task)
            except IntegrityMismatchError as e:
                logger.warning(f"{e}; retrying {obj} once")
                try:
                    task.bytes_transferred = await self._copy_with_retry(task)
                except IntegrityMismatchError as e:
                    return self._fail(task, FailureKind.INTEGRITY, str(e))
            task.outcome = TaskOutcome.SUCCEEDED
            return task
        except TransientTransferError as e:
            return self._fail(task, FailureKind.TRANSIENT, f"{e} (after {task.attempts} attempts)")
        except PermanentTransferError as e:
            return self._fail(task, FailureKind.PERMANENT, str(e))
        except TransferError as e:
            return self._fail(task, FailureKind.ERROR, str(e))
        except OSError as e:
            return self._fail(task, FailureKind.ERROR, f"{type(e).__name__}: {e}")

    @staticmethod
    def _fail(task: TransferTask, kind: FailureKind, message: str) -> TransferTask:
        task.outcome = TaskOutcome.FAILED
        task.failure_kind = kind
        task.error = message
        task.bytes_transferred = 0
        logger.debug(f"{task.object} failed ({kind.value}): {message}")
        return task

    async def _copy_with_retry(self, task: TransferTask) -> int:
        def count_attempt(_attempt: int) -> None:
            task.attempts += 1

        return await self.retry_handler.retry_with_backoff(
            self._copy_once,
            task.object,
            retry_config=self.options.retry,
            on_attempt=count_attempt,
        )

    async def _copy_once(self, obj: TransferObject) -> int:
        """One download-then-upload attempt; returns the bytes moved."""
        hasher = hashlib.md5()
        moved = 0
        async with self.source.open_read(obj.bucket, obj.key) as reader:
            source_etag = normalize_etag(obj.etag) or reader.stat.etag
            content_type = obj.content_type or reader.stat.content_type
            size = obj.size if obj.size >= 0 else reader.stat.size

            if size > self.options.stream_threshold:
                async def body() -> AsyncIterator[bytes]:
                    nonlocal moved
                    async for chunk in reader.iter_chunks(self.options.chunk_size):
                        hasher.update(chunk)
                        moved += len(chunk)
                        yield chunk

                await self.target.write(obj.bucket, obj.key, body(), size=size, content_type=content_type)
            else:
                data = b"".join([chunk async for chunk in reader.iter_chunks(self.options.chunk_size)])
                hasher.update(data)
                moved = len(data)
                await self.target.write(obj.bucket, obj.key, data, size=moved, content_type=content_type)

        if self.options.verify_integrity:
            await self._verify(obj, size, moved, hasher.hexdigest(), source_etag)
        return moved

    async def _verify(self, obj: TransferObject, size: int, moved: int, digest: str, source_etag: Optional[str]) -> None:
        if size >= 0 and moved != size:
            raise IntegrityMismatchError(f"{obj}: read {moved} bytes, expected {size}")
        if is_md5_etag(source_etag) and digest != source_etag:
            raise IntegrityMismatchError(f"{obj}: content md5 {digest} does not match source ETag {source_etag}")

        stat = await self.target.stat(obj.bucket, obj.key)
        if stat is None:
            raise IntegrityMismatchError(f"{obj}: object missing on target after upload")
        if stat.size != moved:
            raise IntegrityMismatchError(f"{obj}: target size {stat.size}, expected {moved}")
        target_etag = normalize_etag(stat.etag)
        if is_md5_etag(target_etag) and target_etag != digest:
            raise IntegrityMismatchError(f"{obj}: target ETag {target_etag} does not match content md5 {digest}")
