"""
pg_dump driver.

Connection parameters travel through the PG* environment variables so
that no credential ever shows up in a process listing.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from supamigrate.core.exceptions import DumpError, ToolTimeoutError
from supamigrate.database.process import collect_lines, connection_env, find_executable, spawn, terminate
from supamigrate.database.stream import DumpStream, open_stream_writer
from supamigrate.models.config import ProjectEndpoint
from supamigrate.models.session import MigrationScope, ScopeMode
from supamigrate.utils.logging import redact

logger = logging.getLogger(__name__)

# Object rows are copied through the storage API, never through SQL.
STORAGE_OBJECTS_TABLE = "storage.objects"


class PgDump:
    """Runs pg_dump and streams its output to disk."""

    def __init__(
        self,
        executable: str = "pg_dump",
        stall_timeout: float = 300.0,
        chunk_size: int = 64 * 1024
    ):
        self.executable = executable
        self.stall_timeout = stall_timeout
        self.chunk_size = chunk_size

    def check_available(self) -> str:
        return find_executable(self.executable)

    def build_args(self, scope: MigrationScope) -> List[str]:
        """Translate a scope into pg_dump arguments."""
        args = ["--quote-all-identifiers", "--no-password"]
        if scope.mode == ScopeMode.SCHEMA_ONLY:
            args += ["--clean", "--if-exists", "--schema-only"]
        elif scope.mode == ScopeMode.DATA_ONLY:
            # pg_dump refuses --clean together with --data-only
            args.append("--data-only")
        else:
            args += ["--clean", "--if-exists"]

        args.append(f"--exclude-table-data={STORAGE_OBJECTS_TABLE}")
        for schema in scope.excluded_schemas:
            args.append(f"--exclude-schema={schema}")
        for table in scope.excluded_tables:
            args.append(f"--exclude-table={table}")
        return args

    async def dump(
        self,
        endpoint: ProjectEndpoint,
        scope: MigrationScope,
        output_path: Path,
        compress: bool = False
    ) -> DumpStream:
        """
        Dump the endpoint's database into ``output_path``.

        Raises:
            ToolNotFoundError: pg_dump is not installed
            ToolTimeoutError: pg_dump produced no output for ``stall_timeout`` seconds
            DumpError: pg_dump exited with a non-zero status
        """
        database = endpoint.require_database()
        output_path = Path(output_path)
        args = self.build_args(scope)

        logger.info(f"Dumping database of {endpoint.project_ref} ({scope.mode.value})")
        process = await spawn(
            self.executable,
            args,
            connection_env(database),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )

        stderr_lines: List[str] = []
        stderr_task = asyncio.create_task(collect_lines(process.stderr, stderr_lines))
        written = 0
        returncode: Optional[int] = None
        try:
            with open_stream_writer(output_path, compressed=compress) as out:
                while True:
                    chunk = await asyncio.wait_for(process.stdout.read(self.chunk_size), self.stall_timeout)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
            returncode = await asyncio.wait_for(process.wait(), self.stall_timeout)
            await stderr_task
        except asyncio.TimeoutError:
            await terminate(process)
            stderr_task.cancel()
            self._discard(output_path)
            raise ToolTimeoutError(
                f"{self.executable} produced no output for {self.stall_timeout:.0f}s and was killed",
                stderr=redact("\n".join(stderr_lines))
            )
        except BaseException:
            await terminate(process)
            stderr_task.cancel()
            self._discard(output_path)
            raise

        stderr_text = redact("\n".join(stderr_lines))
        if returncode != 0:
            self._discard(output_path)
            raise DumpError(
                f"{self.executable} exited with status {returncode}: {stderr_text[-500:]}",
                stderr=stderr_text,
                exit_code=returncode
            )

        for line in stderr_lines:
            logger.debug(f"{self.executable}: {redact(line)}")
        logger.info(f"Dump complete: {written} bytes")
        return DumpStream(path=output_path, compressed=compress, transform_mode=None)

    @staticmethod
    def _discard(path: Path) -> None:
        if path.exists():
            path.unlink()
