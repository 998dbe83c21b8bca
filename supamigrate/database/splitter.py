"""
Statement splitter for plain-text SQL dumps.

The splitter consumes a dump line by line and groups the lines into
statements without ever holding more than one statement in memory. It
tracks quoting state across lines so that semicolons inside string
literals, quoted identifiers, dollar-quoted bodies and comments never end
a statement.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, List, Optional

from supamigrate.core.exceptions import TransformError

_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_\u0080-\uffff][A-Za-z0-9_\u0080-\uffff]*)?\$")
_COPY_FROM_STDIN = re.compile(r"^\s*COPY\b.*\bFROM\s+stdin\b", re.IGNORECASE | re.DOTALL)
_COPY_TERMINATOR = "\\."


class StatementKind(str, Enum):
    SQL = "sql"
    META = "meta"
    COPY_DATA = "copy_data"
    COMMENT = "comment"


@dataclass(frozen=True)
class Statement:
    """One unit of the dump: a SQL command, a psql meta command, COPY data, or comment lines."""
    text: str
    kind: StatementKind
    line_number: int

    @property
    def is_sql(self) -> bool:
        return self.kind == StatementKind.SQL


def _is_ident_char(ch: str) -> bool:
    return bool(ch) and (ch.isalnum() or ch in ("_", "$"))


class StatementSplitter:
    """
    Incremental splitter.

    Feed lines with :meth:`feed`, then call :meth:`finish`. Both return the
    statements completed by that call.
    """

    def __init__(self):
        self._buffer: List[str] = []
        self._start_line = 0
        self._line_number = 0
        self._in_single = False
        self._single_escapes = False
        self._in_double = False
        self._dollar_tag: Optional[str] = None
        self._block_depth = 0
        self._in_copy = False

    @property
    def in_open_construct(self) -> bool:
        return (
            self._in_single or self._in_double or self._dollar_tag is not None
            or self._block_depth > 0 or self._in_copy
        )

    def _describe_open_construct(self) -> str:
        if self._in_copy:
            return "COPY data block"
        if self._in_single:
            return "string literal"
        if self._in_double:
            return "quoted identifier"
        if self._dollar_tag is not None:
            return f"dollar-quoted body {self._dollar_tag}"
        if self._block_depth:
            return "block comment"
        return "statement"

    def _emit(self, kind: StatementKind) -> Statement:
        statement = Statement("".join(self._buffer), kind, self._start_line)
        self._buffer = []
        return statement

    def feed(self, line: str) -> List[Statement]:
        self._line_number += 1
        out: List[Statement] = []

        if self._in_copy:
            self._buffer.append(line)
            if line.rstrip("\r\n") == _COPY_TERMINATOR:
                self._in_copy = False
                out.append(self._emit(StatementKind.COPY_DATA))
            return out

        while line:
            if not self._buffer:
                self._start_line = self._line_number
                stripped = line.strip()
                if not stripped or stripped.startswith("--"):
                    self._buffer.append(line)
                    out.append(self._emit(StatementKind.COMMENT))
                    return out
                if stripped.startswith("\\"):
                    self._buffer.append(line)
                    out.append(self._emit(StatementKind.META))
                    return out

            end = self._scan(line)
            if end is None:
                self._buffer.append(line)
                return out

            head, rest = line[:end + 1], line[end + 1:]
            rest_stripped = rest.strip()
            if not rest_stripped or rest_stripped.startswith("--"):
                # trailing comment stays with its statement
                self._buffer.append(line)
                line = ""
            else:
                self._buffer.append(head + "\n")
                line = rest.lstrip(" \t")

            statement = self._emit(StatementKind.SQL)
            out.append(statement)
            if _COPY_FROM_STDIN.match(statement.text):
                self._in_copy = True
                if line:
                    raise TransformError(
                        "Unexpected content after COPY ... FROM stdin",
                        line_number=self._line_number
                    )
        return out

    def _scan(self, line: str) -> Optional[int]:
        """Advance quoting state over ``line``; return the index of a terminating semicolon."""
        i = 0
        n = len(line)
        while i < n:
            ch = line[i]
            if self._block_depth:
                if line.startswith("/*", i):
                    self._block_depth += 1
                    i += 2
                elif line.startswith("*/", i):
                    self._block_depth -= 1
                    i += 2
                else:
                    i += 1
            elif self._in_single:
                if ch == "\\" and self._single_escapes:
                    i += 2
                elif ch == "'":
                    if i + 1 < n and line[i + 1] == "'":
                        i += 2
                    else:
                        self._in_single = False
                        i += 1
                else:
                    i += 1
            elif self._in_double:
                if ch == '"':
                    if i + 1 < n and line[i + 1] == '"':
                        i += 2
                    else:
                        self._in_double = False
                        i += 1
                else:
                    i += 1
            elif self._dollar_tag is not None:
                if line.startswith(self._dollar_tag, i):
                    i += len(self._dollar_tag)
                    self._dollar_tag = None
                else:
                    i += 1
            elif line.startswith("--", i):
                return None
            elif line.startswith("/*", i):
                self._block_depth = 1
                i += 2
            elif ch == "'":
                prev = line[i - 1] if i > 0 else ""
                before = line[i - 2] if i > 1 else ""
                self._single_escapes = prev in ("e", "E") and not _is_ident_char(before)
                self._in_single = True
                i += 1
            elif ch == '"':
                self._in_double = True
                i += 1
            elif ch == "$" and (i == 0 or not _is_ident_char(line[i - 1])):
                match = _DOLLAR_TAG.match(line, i)
                if match:
                    self._dollar_tag = match.group(0)
                    i = match.end()
                else:
                    i += 1
            elif ch == ";":
                return i
            else:
                i += 1
        return None

    def finish(self) -> List[Statement]:
        """Flush the final statement; raise if the input ended mid-construct."""
        if self.in_open_construct:
            raise TransformError(
                f"Dump ended inside an unterminated {self._describe_open_construct()} "
                f"starting at line {self._start_line}",
                line_number=self._start_line
            )
        if not self._buffer:
            return []
        if "".join(self._buffer).strip():
            raise TransformError(
                f"Dump ended with an unterminated statement starting at line {self._start_line}",
                line_number=self._start_line
            )
        return [self._emit(StatementKind.COMMENT)]


def split_statements(lines: Iterable[str]) -> Iterator[Statement]:
    """Split an iterable of lines into statements."""
    splitter = StatementSplitter()
    for line in lines:
        yield from splitter.feed(line)
    yield from splitter.finish()
