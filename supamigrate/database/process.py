"""
Subprocess helpers shared by the dump and restore drivers.
"""

import asyncio
import os
import shutil
from typing import Dict, List, Optional

from supamigrate.core.exceptions import ToolNotFoundError
from supamigrate.models.config import DatabaseDescriptor


def find_executable(executable: str) -> str:
    """Resolve ``executable`` on PATH or raise ToolNotFoundError."""
    path = shutil.which(executable)
    if path is None:
        raise ToolNotFoundError(
            f"{executable} not found. Install the PostgreSQL client tools and make sure "
            f"{executable} is on PATH."
        )
    return path


def connection_env(database: DatabaseDescriptor) -> Dict[str, str]:
    """Process environment carrying the connection parameters."""
    env = os.environ.copy()
    env.update(database.to_env())
    return env


async def spawn(executable: str, args: List[str], env: Dict[str, str], **kwargs) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(executable, *args, env=env, **kwargs)
    except FileNotFoundError:
        raise ToolNotFoundError(f"{executable} not found on PATH")


async def terminate(process: asyncio.subprocess.Process) -> None:
    """Kill ``process`` if it is still running and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    try:
        await asyncio.wait_for(process.wait(), timeout=10)
    except asyncio.TimeoutError:
        pass


async def collect_lines(reader: Optional[asyncio.StreamReader], sink: List[str]) -> None:
    """Read ``reader`` to EOF, appending decoded lines to ``sink``."""
    if reader is None:
        return
    while True:
        raw = await reader.readline()
        if not raw:
            return
        sink.append(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
