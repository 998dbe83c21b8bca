"""
On-disk SQL dump streams.
"""

import gzip
import io
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import IO, TYPE_CHECKING, Iterator, Optional

if TYPE_CHECKING:
    from supamigrate.database.transform import TransformMode


def is_gzip_path(path: Path) -> bool:
    return Path(path).suffix == ".gz"


@dataclass(frozen=True)
class DumpStream:
    """
    A SQL text stream stored on disk, optionally gzip compressed.

    ``transform_mode`` records the rewrite already applied to the stream, or
    None for raw dump tool output.
    """
    path: Path
    compressed: bool = False
    transform_mode: Optional["TransformMode"] = None

    @classmethod
    def from_path(cls, path: Path, transform_mode: Optional["TransformMode"] = None) -> "DumpStream":
        path = Path(path)
        return cls(path=path, compressed=is_gzip_path(path), transform_mode=transform_mode)

    @property
    def size(self) -> int:
        return self.path.stat().st_size

    def with_mode(self, mode: Optional["TransformMode"]) -> "DumpStream":
        return replace(self, transform_mode=mode)

    def open_binary(self) -> IO[bytes]:
        """Open the stream for reading decompressed bytes."""
        if self.compressed:
            return gzip.open(self.path, "rb")
        return open(self.path, "rb")

    def iter_lines(self) -> Iterator[str]:
        """Yield the stream line by line, keeping line terminators."""
        with self.open_binary() as raw:
            with io.TextIOWrapper(raw, encoding="utf-8", newline="") as text:
                for line in text:
                    yield line

    def iter_chunks(self, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        with self.open_binary() as raw:
            for chunk in iter(lambda: raw.read(chunk_size), b""):
                yield chunk


@contextmanager
def open_stream_writer(path: Path, compressed: bool = False) -> Iterator[IO[bytes]]:
    """Open ``path`` for writing SQL bytes, gzip compressed when requested."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if compressed:
        f = gzip.open(path, "wb")
    else:
        f = open(path, "wb")
    try:
        yield f
    finally:
        f.close()
