"""
Data models for Supamigrate.
"""

from supamigrate.models.config import (
    CollisionPolicy,
    DatabaseDescriptor,
    DefaultsConfig,
    ProjectConfig,
    ProjectEndpoint,
    SupamigrateConfig,
    resolve_endpoint,
)
from supamigrate.models.session import (
    ItemFailure,
    MigrationOutcome,
    MigrationScope,
    MigrationStatus,
    PhaseName,
    PhaseResult,
    PhaseStatus,
    ScopeMode,
)

__all__ = [
    "CollisionPolicy",
    "DatabaseDescriptor",
    "DefaultsConfig",
    "ProjectConfig",
    "ProjectEndpoint",
    "SupamigrateConfig",
    "resolve_endpoint",
    "ItemFailure",
    "MigrationOutcome",
    "MigrationScope",
    "MigrationStatus",
    "PhaseName",
    "PhaseResult",
    "PhaseStatus",
    "ScopeMode",
]
