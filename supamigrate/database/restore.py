"""
psql restore driver.

The dump is fed to psql on stdin while stderr is read concurrently. Each
``ERROR:`` line becomes a StatementFailure; errors that only mean the
target already had (or never had) an object are recoverable. Connection
and disk problems are fatal: psql is killed and RestoreError raised.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from supamigrate.core.exceptions import RestoreError, ToolTimeoutError
from supamigrate.database.process import connection_env, find_executable, spawn, terminate
from supamigrate.database.stream import DumpStream
from supamigrate.models.config import ProjectEndpoint
from supamigrate.utils.logging import redact

logger = logging.getLogger(__name__)

FATAL_PATTERNS = [
    re.compile(r"\bFATAL:"),
    re.compile(r"password authentication failed", re.IGNORECASE),
    re.compile(r"could not connect to server", re.IGNORECASE),
    re.compile(r"connection to server .* failed", re.IGNORECASE),
    re.compile(r"connection refused", re.IGNORECASE),
    re.compile(r"no space left on device", re.IGNORECASE),
    re.compile(r"could not translate host name", re.IGNORECASE),
    re.compile(r"server closed the connection unexpectedly", re.IGNORECASE),
]

RECOVERABLE_PATTERNS = [
    re.compile(r"already exists", re.IGNORECASE),
    re.compile(r"does not exist", re.IGNORECASE),
    re.compile(r"must be owner of", re.IGNORECASE),
    re.compile(r"permission denied for schema", re.IGNORECASE),
    re.compile(r"duplicate key value", re.IGNORECASE),
    re.compile(r"multiple primary keys", re.IGNORECASE),
]

# psql:<stdin>:42: ERROR:  relation "users" already exists
_PSQL_PREFIX = re.compile(r"^psql:(?:[^:]*):(?P<line>\d+):\s*")
_SEVERITY = re.compile(r"^(?P<severity>ERROR|DETAIL|HINT|CONTEXT|LINE \d+|WARNING|NOTICE):\s*(?P<message>.*)$")
_FATAL_SEVERITY = re.compile(r"^(?:FATAL|PANIC):")


class RestoreStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_WARNINGS = "succeeded_with_warnings"
    FAILED = "failed"


@dataclass
class StatementFailure:
    """One statement psql reported an error for."""
    message: str
    recoverable: bool
    line_number: Optional[int] = None
    details: List[str] = field(default_factory=list)

    def describe(self) -> str:
        where = f"line {self.line_number}: " if self.line_number is not None else ""
        return f"{where}{self.message}"


@dataclass
class RestoreOutcome:
    """Result of replaying one dump stream."""
    exit_code: int
    failures: List[StatementFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def recoverable_failures(self) -> List[StatementFailure]:
        return [f for f in self.failures if f.recoverable]

    @property
    def fatal_failures(self) -> List[StatementFailure]:
        return [f for f in self.failures if not f.recoverable]

    @property
    def status(self) -> RestoreStatus:
        if self.exit_code != 0 or self.fatal_failures:
            return RestoreStatus.FAILED
        if self.failures:
            return RestoreStatus.SUCCEEDED_WITH_WARNINGS
        return RestoreStatus.SUCCEEDED

    def summary(self) -> str:
        recoverable = len(self.recoverable_failures)
        fatal = len(self.fatal_failures)
        if self.status == RestoreStatus.SUCCEEDED:
            return "restore succeeded"
        if self.status == RestoreStatus.SUCCEEDED_WITH_WARNINGS:
            return f"restore succeeded with {recoverable} recoverable error{'s' if recoverable != 1 else ''}"
        return f"restore failed: {fatal} non-recoverable, {recoverable} recoverable errors"


def is_fatal(line: str) -> bool:
    return any(p.search(line) for p in FATAL_PATTERNS)


def is_recoverable(message: str) -> bool:
    return any(p.search(message) for p in RECOVERABLE_PATTERNS)


class StderrClassifier:
    """Turns psql stderr lines into StatementFailure records."""

    def __init__(self):
        self.failures: List[StatementFailure] = []
        self.warnings: List[str] = []
        self.fatal_line: Optional[str] = None

    def feed(self, line: str) -> bool:
        """Classify one line; return True when it is fatal."""
        if not line.strip():
            return False

        line_number = None
        body = line
        prefix = _PSQL_PREFIX.match(line)
        if prefix:
            line_number = int(prefix.group("line"))
            body = line[prefix.end():]

        if _FATAL_SEVERITY.match(body):
            self.fatal_line = line
            return True

        match = _SEVERITY.match(body)
        if not match:
            # statement diagnostics echo row data, so only other lines can be fatal
            if is_fatal(line):
                self.fatal_line = line
                return True
            self.warnings.append(body)
            return False

        severity, message = match.group("severity"), match.group("message").strip()
        if severity == "ERROR":
            self.failures.append(StatementFailure(
                message=message,
                recoverable=is_recoverable(message),
                line_number=line_number,
            ))
        elif severity in ("DETAIL", "HINT", "CONTEXT") or severity.startswith("LINE"):
            if self.failures:
                self.failures[-1].details.append(f"{severity}: {message}")
        else:
            self.warnings.append(line)
        return False


class PgRestore:
    """Replays a dump stream through psql."""

    def __init__(
        self,
        executable: str = "psql",
        stall_timeout: float = 300.0,
        chunk_size: int = 64 * 1024
    ):
        self.executable = executable
        self.stall_timeout = stall_timeout
        self.chunk_size = chunk_size

    def check_available(self) -> str:
        return find_executable(self.executable)

    def build_args(self) -> List[str]:
        return ["-X", "-q", "--no-password", "-v", "ON_ERROR_STOP=0", "-f", "-"]

    async def restore(self, endpoint: ProjectEndpoint, stream: DumpStream) -> RestoreOutcome:
        """
        Replay ``stream`` against the endpoint's database.

        Raises:
            ToolNotFoundError: psql is not installed
            ToolTimeoutError: psql stopped accepting input, or went silent after the end of
                input, for ``stall_timeout`` seconds
            RestoreError: a fatal error was reported or psql exited unsuccessfully
        """
        database = endpoint.require_database()
        logger.info(f"Restoring {stream.path.name} into {endpoint.project_ref}")

        process = await spawn(
            self.executable,
            self.build_args(),
            connection_env(database),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE
        )

        classifier = StderrClassifier()
        fatal = asyncio.Event()
        loop = asyncio.get_running_loop()
        last_line = loop.time()

        async def read_stderr():
            nonlocal last_line
            while True:
                raw = await process.stderr.readline()
                if not raw:
                    return
                last_line = loop.time()
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if classifier.feed(line):
                    fatal.set()
                    await terminate(process)
                    return

        reader = asyncio.create_task(read_stderr())
        try:
            await self._feed(process, stream, fatal)
            # psql may keep working after end of input; each stderr line restarts the clock
            last_line = loop.time()
            while not reader.done():
                remaining = self.stall_timeout - (loop.time() - last_line)
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                await asyncio.wait({reader}, timeout=remaining)
            reader.result()
            returncode = await asyncio.wait_for(process.wait(), self.stall_timeout)
        except asyncio.TimeoutError:
            await terminate(process)
            reader.cancel()
            raise ToolTimeoutError(
                f"{self.executable} stalled for {self.stall_timeout:.0f}s and was killed",
                stderr=redact("\n".join(classifier.warnings[-20:]))
            )
        except BaseException:
            await terminate(process)
            reader.cancel()
            raise

        if fatal.is_set():
            message = redact(classifier.fatal_line or "fatal error")
            raise RestoreError(
                f"Restore aborted: {message}",
                failures=classifier.failures,
                stderr=message,
                exit_code=process.returncode
            )

        outcome = RestoreOutcome(
            exit_code=returncode,
            failures=classifier.failures,
            warnings=classifier.warnings,
        )
        if returncode != 0:
            raise RestoreError(
                f"{self.executable} exited with status {returncode}",
                failures=classifier.failures,
                exit_code=returncode
            )

        for failure in outcome.failures:
            level = logging.WARNING if failure.recoverable else logging.ERROR
            logger.log(level, f"Restore error at {failure.describe()}")
        logger.info(outcome.summary())
        return outcome

    async def _feed(self, process: asyncio.subprocess.Process, stream: DumpStream, fatal: asyncio.Event) -> None:
        stdin = process.stdin
        try:
            for chunk in stream.iter_chunks(self.chunk_size):
                if fatal.is_set():
                    break
                stdin.write(chunk)
                await asyncio.wait_for(stdin.drain(), self.stall_timeout)
        except (BrokenPipeError, ConnectionResetError):
            # psql went away; stderr tells why
            pass
        finally:
            try:
                stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass
