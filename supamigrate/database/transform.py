"""
SQL snapshot transformer.

Rewrites a plain-text dump so it can be replayed against a project other
than the one it was taken from. The transformer is a streaming filter: it
splits the dump into statements, runs each SQL statement through an
ordered rule set and writes the result. Statements that must not run are
commented out line by line, which keeps the output replayable and makes a
second pass over transformed output a no-op.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple

from supamigrate.core.exceptions import TransformError
from supamigrate.database.splitter import Statement, StatementKind, split_statements
from supamigrate.database.stream import DumpStream, open_stream_writer

logger = logging.getLogger(__name__)


class TransformMode(str, Enum):
    """Where the transformed stream is going."""
    PROJECT_TO_PROJECT = "project_to_project"
    PROJECT_TO_ARCHIVE = "project_to_archive"
    ARCHIVE_TO_PROJECT = "archive_to_project"

    @property
    def targets_project(self) -> bool:
        return self != TransformMode.PROJECT_TO_ARCHIVE


ALL_MODES: FrozenSet[TransformMode] = frozenset(TransformMode)
PROJECT_MODES: FrozenSet[TransformMode] = frozenset(m for m in TransformMode if m.targets_project)


class TransformAction(str, Enum):
    KEEP = "keep"
    COMMENT_OUT = "comment_out"
    REWRITE = "rewrite"


class RuleCategory(str, Enum):
    """Rule categories, in evaluation order."""
    MANAGED_SCHEMA = "managed_schema"
    DEFAULT_PRIVILEGES = "default_privileges"
    OWNERSHIP = "ownership"
    EXTENSIONS = "extensions"
    ROLES = "roles"


CATEGORY_ORDER: Tuple[RuleCategory, ...] = tuple(RuleCategory)

# Roles every hosted project provides; statements referencing them replay as-is.
DEFAULT_TARGET_ROLES: FrozenSet[str] = frozenset({
    "postgres",
    "anon",
    "authenticated",
    "service_role",
    "authenticator",
    "dashboard_user",
    "pgbouncer",
    "supabase_auth_admin",
    "supabase_storage_admin",
    "supabase_functions_admin",
    "supabase_realtime_admin",
    "supabase_replication_admin",
    "supabase_read_only_user",
    "pgsodium_keyholder",
    "pgsodium_keyiduser",
    "pgsodium_keymaker",
})

DEFAULT_ROLE_EQUIVALENTS: Mapping[str, str] = {"supabase_admin": "postgres"}


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def unquote_ident(token: str) -> str:
    token = token.strip()
    if len(token) >= 2 and token.startswith('"') and token.endswith('"'):
        return token[1:-1].replace('""', '"')
    return token


def _mask_quoted(text: str) -> str:
    """Blank out the contents of quoted identifiers and literals, keeping offsets."""
    out = []
    quote = None
    for ch in text:
        if quote is None:
            if ch in ('"', "'"):
                quote = ch
            out.append(ch)
        elif ch == quote:
            quote = None
            out.append(ch)
        else:
            out.append("x")
    return "".join(out)


@dataclass(frozen=True)
class RoleMapping:
    """How roles of the source project map onto the target project."""
    target_role: str = "postgres"
    equivalents: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_ROLE_EQUIVALENTS))
    known_roles: FrozenSet[str] = DEFAULT_TARGET_ROLES

    def resolve(self, role: str) -> Optional[str]:
        """Return the target role for ``role``, or None when it has no equivalent."""
        if role.upper() in ("PUBLIC", "CURRENT_USER", "CURRENT_ROLE", "SESSION_USER"):
            return role
        if role in self.equivalents:
            return self.equivalents[role]
        if role == self.target_role or role in self.known_roles or role.startswith("pg_"):
            return role
        return None


RewriteFunc = Callable[[str, "re.Match[str]", RoleMapping], Optional[str]]


@dataclass(frozen=True)
class TransformRule:
    """
    One ordered rewrite rule.

    For REWRITE rules ``rewrite`` returns the new statement text, or None
    when the statement has to be commented out instead.
    """
    name: str
    category: RuleCategory
    pattern: "re.Pattern[str]"
    action: TransformAction
    modes: FrozenSet[TransformMode] = ALL_MODES
    rewrite: Optional[RewriteFunc] = None

    def applies_to(self, mode: TransformMode) -> bool:
        return mode in self.modes


def _swap_role_token(text: str, start: int, end: int, role: str) -> str:
    original = text[start:end]
    replacement = quote_ident(role) if original.startswith('"') else role
    return text[:start] + replacement + text[end:]


def _rewrite_owner(text: str, match: "re.Match[str]", roles: RoleMapping) -> Optional[str]:
    owner = unquote_ident(match.group("role"))
    new_owner = roles.resolve(owner) or roles.target_role
    if new_owner == owner:
        return text
    return _swap_role_token(text, match.start("role"), match.end("role"), new_owner)


def _rewrite_create_extension(text: str, match: "re.Match[str]", roles: RoleMapping) -> Optional[str]:
    return text[:match.end()] + "IF NOT EXISTS " + text[match.end():]


_ROLE_TOKEN = re.compile(r'"(?:[^"]|"")+"|[A-Za-z_][\w$]*')
_GRANT_TO = re.compile(r"\sTO\s", re.IGNORECASE)
_REVOKE_FROM = re.compile(r"\sFROM\s", re.IGNORECASE)
_GRANTEE_END = re.compile(
    r"\s+WITH\s+\w+\s+OPTION\b|\s+GRANTED\s+BY\b|\s+CASCADE\b|\s+RESTRICT\b|\s*;",
    re.IGNORECASE
)
_GRANTED_BY = re.compile(r"\sGRANTED\s+BY\s+(?P<role>\"(?:[^\"]|\"\")+\"|[A-Za-z_][\w$]*)", re.IGNORECASE)
_ON_CLAUSE = re.compile(r"\sON\s", re.IGNORECASE)


def _remap_role_list(text: str, masked: str, start: int, end: int, roles: RoleMapping) -> Optional[str]:
    """Remap a comma separated role list found at text[start:end]."""
    pieces = []
    changed = False
    pos = start
    for part in masked[start:end].split(","):
        token_text = text[pos:pos + len(part)]
        pos += len(part) + 1
        stripped = token_text.strip()
        if not stripped:
            continue
        prefix = ""
        if stripped.upper().startswith("GROUP "):
            prefix, stripped = stripped[:6], stripped[6:].strip()
        name = unquote_ident(stripped)
        mapped = roles.resolve(name)
        if mapped is None:
            return None
        if mapped == name:
            pieces.append(prefix + stripped)
        else:
            changed = True
            pieces.append(prefix + (quote_ident(mapped) if stripped.startswith('"') else mapped))
    if not changed:
        return text
    return text[:start] + " " + ", ".join(pieces) + text[end:]


def _rewrite_grant(text: str, match: "re.Match[str]", roles: RoleMapping) -> Optional[str]:
    masked = _mask_quoted(text)
    is_grant = match.group(1).upper() == "GRANT"
    keyword = (_GRANT_TO if is_grant else _REVOKE_FROM).search(masked, match.end())
    if keyword is None:
        raise TransformError(f"Cannot parse grantees of statement: {text.strip()[:120]}")

    tail = _GRANTEE_END.search(masked, keyword.end())
    grantee_end = tail.start() if tail else len(text.rstrip())

    # GRANTED BY sits after the grantee list, so rewrite it first to keep offsets valid
    granted_by = _GRANTED_BY.search(masked, grantee_end)
    if granted_by:
        grantor = unquote_ident(text[granted_by.start("role"):granted_by.end("role")])
        mapped = roles.resolve(grantor)
        if mapped is None:
            return None
        if mapped != grantor:
            text = _swap_role_token(text, granted_by.start("role"), granted_by.end("role"), mapped)
            masked = _mask_quoted(text)

    result = _remap_role_list(text, masked, keyword.end() - 1, grantee_end, roles)
    if result is None:
        return None

    # role membership: GRANT role_a TO role_b
    head = masked[match.end():keyword.start()]
    if not _ON_CLAUSE.search(" " + head + " "):
        result_masked = _mask_quoted(result)
        result = _remap_role_list(result, result_masked, match.end(), keyword.start(), roles)
    return result


def default_rules() -> List[TransformRule]:
    """The default ordered rule set."""
    flags = re.IGNORECASE | re.DOTALL
    return [
        TransformRule(
            name="drop_managed_schema",
            category=RuleCategory.MANAGED_SCHEMA,
            pattern=re.compile(r'^\s*DROP\s+SCHEMA\s+(?:IF\s+EXISTS\s+)?"?(?:auth|storage)"?\s*(?:CASCADE\s*)?;', flags),
            action=TransformAction.COMMENT_OUT,
        ),
        TransformRule(
            name="create_managed_schema",
            category=RuleCategory.MANAGED_SCHEMA,
            pattern=re.compile(r'^\s*CREATE\s+SCHEMA\s+(?:IF\s+NOT\s+EXISTS\s+)?"?(?:auth|storage)"?[\s;]', flags),
            action=TransformAction.COMMENT_OUT,
        ),
        TransformRule(
            name="admin_default_privileges",
            category=RuleCategory.DEFAULT_PRIVILEGES,
            pattern=re.compile(r'^\s*ALTER\s+DEFAULT\s+PRIVILEGES\s+FOR\s+ROLE\s+"?supabase_admin"?\s', flags),
            action=TransformAction.COMMENT_OUT,
        ),
        TransformRule(
            name="object_owner",
            category=RuleCategory.OWNERSHIP,
            pattern=re.compile(
                r'^\s*ALTER\s+.+?\s+OWNER\s+TO\s+(?P<role>"(?:[^"]|"")+"|[A-Za-z_][\w$]*)\s*;', flags
            ),
            action=TransformAction.REWRITE,
            modes=PROJECT_MODES,
            rewrite=_rewrite_owner,
        ),
        TransformRule(
            name="create_extension",
            category=RuleCategory.EXTENSIONS,
            pattern=re.compile(r"^\s*CREATE\s+EXTENSION\s+(?!IF\s+NOT\s+EXISTS\b)", flags),
            action=TransformAction.REWRITE,
            modes=PROJECT_MODES,
            rewrite=_rewrite_create_extension,
        ),
        TransformRule(
            name="drop_extension",
            category=RuleCategory.EXTENSIONS,
            pattern=re.compile(r"^\s*DROP\s+EXTENSION\b", flags),
            action=TransformAction.COMMENT_OUT,
            modes=PROJECT_MODES,
        ),
        TransformRule(
            name="comment_on_extension",
            category=RuleCategory.EXTENSIONS,
            pattern=re.compile(r"^\s*COMMENT\s+ON\s+EXTENSION\b", flags),
            action=TransformAction.COMMENT_OUT,
            modes=PROJECT_MODES,
        ),
        TransformRule(
            name="role_ddl",
            category=RuleCategory.ROLES,
            pattern=re.compile(r"^\s*(?:CREATE|ALTER|DROP)\s+(?:ROLE|USER)\b", flags),
            action=TransformAction.COMMENT_OUT,
            modes=PROJECT_MODES,
        ),
        TransformRule(
            name="grant_revoke",
            category=RuleCategory.ROLES,
            pattern=re.compile(r"^\s*(GRANT|REVOKE)\b", flags),
            action=TransformAction.REWRITE,
            modes=PROJECT_MODES,
            rewrite=_rewrite_grant,
        ),
    ]


def comment_out(text: str) -> str:
    return "".join("-- " + line for line in text.splitlines(keepends=True))


@dataclass
class TransformStats:
    """Counters collected while transforming one stream."""
    statements: int = 0
    rewritten: int = 0
    commented_out: int = 0
    rule_hits: Dict[str, int] = field(default_factory=dict)

    def record(self, rule: TransformRule) -> None:
        self.rule_hits[rule.name] = self.rule_hits.get(rule.name, 0) + 1

    @property
    def changed(self) -> int:
        return self.rewritten + self.commented_out


def check_transformable(applied: Optional[TransformMode], mode: TransformMode) -> None:
    """Refuse to transform a stream twice in a way that would stack rewrites."""
    if applied is None:
        return
    if applied == mode:
        raise TransformError(f"Dump stream was already transformed for {mode.value}")
    if mode == TransformMode.ARCHIVE_TO_PROJECT and applied == TransformMode.PROJECT_TO_ARCHIVE:
        return
    raise TransformError(
        f"Cannot apply {mode.value} to a stream already transformed for {applied.value}"
    )


class SqlTransformer:
    """Applies the ordered rule set to a dump, statement by statement."""

    def __init__(
        self,
        mode: TransformMode,
        rules: Optional[Iterable[TransformRule]] = None,
        roles: Optional[RoleMapping] = None
    ):
        self.mode = mode
        self.rules = list(rules) if rules is not None else default_rules()
        self.roles = roles or RoleMapping()
        self.stats = TransformStats()

        self._by_category: Dict[RuleCategory, List[TransformRule]] = {c: [] for c in CATEGORY_ORDER}
        for rule in self.rules:
            if rule.applies_to(mode):
                self._by_category[rule.category].append(rule)

    def transform_statement(self, statement: Statement) -> str:
        if statement.kind != StatementKind.SQL:
            return statement.text

        self.stats.statements += 1
        text = statement.text
        changed = False

        for category in CATEGORY_ORDER:
            for rule in self._by_category[category]:
                match = rule.pattern.search(text)
                if not match:
                    continue
                if rule.action == TransformAction.COMMENT_OUT:
                    self.stats.record(rule)
                    self.stats.commented_out += 1
                    return comment_out(text)
                if rule.action == TransformAction.REWRITE:
                    new_text = rule.rewrite(text, match, self.roles) if rule.rewrite else text
                    if new_text is None:
                        self.stats.record(rule)
                        self.stats.commented_out += 1
                        return comment_out(text)
                    if new_text != text:
                        self.stats.record(rule)
                        changed = True
                        text = new_text
                # first matching rule of a category wins
                break

        if changed:
            self.stats.rewritten += 1
        return text

    def transform(self, lines: Iterable[str]) -> Iterator[str]:
        """Transform an iterable of lines, yielding output text statement by statement."""
        for statement in split_statements(lines):
            yield self.transform_statement(statement)

    def transform_text(self, text: str) -> str:
        return "".join(self.transform(text.splitlines(keepends=True)))

    def transform_stream(
        self,
        stream: DumpStream,
        output_path: Path,
        compressed: Optional[bool] = None
    ) -> DumpStream:
        """
        Transform ``stream`` into ``output_path``.

        The input is read line by line and the output written statement by
        statement. On any error the partial output file is removed.
        """
        check_transformable(stream.transform_mode, self.mode)
        output_path = Path(output_path)
        if compressed is None:
            compressed = output_path.suffix == ".gz"

        logger.info(f"Transforming dump {stream.path.name} for {self.mode.value}")
        try:
            with open_stream_writer(output_path, compressed=compressed) as out:
                for chunk in self.transform(stream.iter_lines()):
                    out.write(chunk.encode("utf-8"))
        except BaseException:
            if output_path.exists():
                output_path.unlink()
            raise

        logger.info(
            f"Transformed {self.stats.statements} statements: "
            f"{self.stats.rewritten} rewritten, {self.stats.commented_out} commented out"
        )
        return DumpStream(path=output_path, compressed=compressed, transform_mode=self.mode)
