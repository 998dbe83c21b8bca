"""
Edge function sync.

Moves functions one per task through a bounded worker pool, with the same
retry policy as storage transfers. A function the target rejects is
recorded as a failure and the remaining functions carry on.
"""

import asyncio
import fnmatch
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from supamigrate.core.error_handler import RetryConfig, RetryHandler, create_functions_retry_config
from supamigrate.core.exceptions import FunctionsError, TransientFunctionsError
from supamigrate.functions.client import FunctionBundle, FunctionDescriptor, FunctionsClient, METADATA_FILE
from supamigrate.models.config import DefaultsConfig

logger = logging.getLogger(__name__)


class FunctionOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class FunctionResult:
    """Outcome for one function."""
    slug: str
    outcome: FunctionOutcome = FunctionOutcome.SUCCEEDED
    kind: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    files: int = 0


@dataclass
class FunctionSyncResult:
    """Aggregate result of one function sync, backup or restore."""
    results: List[FunctionResult] = field(default_factory=list)
    descriptors: List[FunctionDescriptor] = field(default_factory=list)
    cancelled: bool = False

    @property
    def enumerated(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.outcome == FunctionOutcome.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.outcome == FunctionOutcome.FAILED)

    @property
    def failures(self) -> List[FunctionResult]:
        return [r for r in self.results if r.outcome == FunctionOutcome.FAILED]

    @property
    def success(self) -> bool:
        return self.failed == 0

    def summary(self) -> str:
        return f"{self.succeeded} succeeded, {self.failed} failed of {self.enumerated} functions"


@dataclass
class FunctionSyncOptions:
    concurrency: int = 2
    retry: RetryConfig = field(default_factory=create_functions_retry_config)

    @classmethod
    def from_defaults(cls, defaults: DefaultsConfig) -> "FunctionSyncOptions":
        return cls(
            concurrency=defaults.parallel_functions,
            retry=create_functions_retry_config(defaults.retry_attempts, defaults.retry_base_delay),
        )


def select_functions(descriptors: Sequence[FunctionDescriptor], names: Optional[Sequence[str]]) -> List[FunctionDescriptor]:
    selected = [
        d for d in descriptors
        if not names or any(fnmatch.fnmatchcase(d.slug, n) for n in names)
    ]
    return sorted(selected, key=lambda d: d.slug)


class FunctionSync:
    """Bounded-concurrency function mover."""

    def __init__(
        self,
        options: Optional[FunctionSyncOptions] = None,
        cancel_event: Optional[asyncio.Event] = None
    ):
        self.options = options or FunctionSyncOptions()
        self.cancel_event = cancel_event or asyncio.Event()
        self.retry_handler = RetryHandler(logger)

    async def _retry(self, result: FunctionResult, func: Callable[..., Awaitable], *args):
        def count_attempt(_attempt: int) -> None:
            result.attempts += 1

        return await self.retry_handler.retry_with_backoff(
            func, *args, retry_config=self.options.retry, on_attempt=count_attempt
        )

    async def _list(self, client: FunctionsClient, names: Optional[Sequence[str]]) -> List[FunctionDescriptor]:
        listing_retry = replace(self.options.retry, retryable_exceptions=[TransientFunctionsError])
        descriptors = await self.retry_handler.retry_with_backoff(client.list_functions, retry_config=listing_retry)
        return select_functions(descriptors, names)

    async def _run(
        self,
        slugs: List[str],
        handler: Callable[[FunctionResult], Awaitable[None]]
    ) -> FunctionSyncResult:
        queue: asyncio.Queue = asyncio.Queue()
        results = {slug: FunctionResult(slug=slug) for slug in slugs}
        for slug in slugs:
            queue.put_nowait(results[slug])

        async def worker():
            while True:
                try:
                    result = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if self.cancel_event.is_set():
                    result.outcome = FunctionOutcome.FAILED
                    result.kind = "cancelled"
                    result.error = "cancelled before start"
                    continue
                try:
                    await handler(result)
                except FunctionsError as e:
                    result.outcome = FunctionOutcome.FAILED
                    result.kind = "transient" if isinstance(e, TransientFunctionsError) else "permanent"
                    result.error = str(e)
                    logger.warning(f"Function {result.slug} failed: {e}")
                except OSError as e:
                    result.outcome = FunctionOutcome.FAILED
                    result.kind = "error"
                    result.error = f"{type(e).__name__}: {e}"
                    logger.warning(f"Function {result.slug} failed: {e}")

        workers = [asyncio.create_task(worker()) for _ in range(min(self.options.concurrency, max(len(slugs), 1)))]
        await asyncio.gather(*workers)

        sync_result = FunctionSyncResult(
            results=[results[slug] for slug in slugs],
            cancelled=self.cancel_event.is_set(),
        )
        logger.info(f"Functions: {sync_result.summary()}")
        return sync_result

    async def sync(
        self,
        source: FunctionsClient,
        target: FunctionsClient,
        names: Optional[Sequence[str]] = None
    ) -> FunctionSyncResult:
        """Copy functions from one project to another."""
        descriptors = await self._list(source, names)
        by_slug = {d.slug: d for d in descriptors}

        async def handle(result: FunctionResult) -> None:
            bundle = await self._retry(result, source.download_function, by_slug[result.slug])
            result.files = len(bundle.files)
            await self._retry(result, target.upload_function, bundle)

        sync_result = await self._run(list(by_slug), handle)
        sync_result.descriptors = descriptors
        return sync_result

    async def backup(
        self,
        source: FunctionsClient,
        directory: Path,
        names: Optional[Sequence[str]] = None
    ) -> FunctionSyncResult:
        """Download functions into ``directory/<slug>``."""
        descriptors = await self._list(source, names)
        by_slug = {d.slug: d for d in descriptors}
        directory = Path(directory)

        async def handle(result: FunctionResult) -> None:
            bundle = await self._retry(result, source.download_function, by_slug[result.slug])
            result.files = len(bundle.files)
            await asyncio.to_thread(bundle.save, directory)

        sync_result = await self._run(list(by_slug), handle)
        sync_result.descriptors = descriptors
        return sync_result

    async def restore(
        self,
        directory: Path,
        target: FunctionsClient,
        names: Optional[Sequence[str]] = None,
        slugs: Optional[Sequence[str]] = None
    ) -> FunctionSyncResult:
        """Deploy the functions saved below ``directory``."""
        directory = Path(directory)
        if slugs is None:
            slugs = sorted(
                p.name for p in directory.iterdir()
                if p.is_dir() and (p / METADATA_FILE).is_file()
            ) if directory.is_dir() else []
        selected = [s for s in slugs if not names or any(fnmatch.fnmatchcase(s, n) for n in names)]

        async def handle(result: FunctionResult) -> None:
            bundle = await asyncio.to_thread(FunctionBundle.load, directory / result.slug)
            result.files = len(bundle.files)
            await self._retry(result, target.upload_function, bundle)

        return await self._run(sorted(selected), handle)
