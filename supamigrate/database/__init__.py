"""
Database module for Supamigrate.

Dump, transform and restore of Postgres snapshots.
"""

from supamigrate.database.dump import PgDump
from supamigrate.database.restore import (
    PgRestore,
    RestoreOutcome,
    RestoreStatus,
    StatementFailure,
)
from supamigrate.database.splitter import Statement, StatementKind, StatementSplitter, split_statements
from supamigrate.database.stream import DumpStream
from supamigrate.database.transform import (
    RoleMapping,
    RuleCategory,
    SqlTransformer,
    TransformAction,
    TransformMode,
    TransformRule,
    TransformStats,
    default_rules,
)

__all__ = [
    "PgDump",
    "PgRestore",
    "RestoreOutcome",
    "RestoreStatus",
    "StatementFailure",
    "Statement",
    "StatementKind",
    "StatementSplitter",
    "split_statements",
    "DumpStream",
    "RoleMapping",
    "RuleCategory",
    "SqlTransformer",
    "TransformAction",
    "TransformMode",
    "TransformRule",
    "TransformStats",
    "default_rules",
]
