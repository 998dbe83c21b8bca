"""
Supamigrate

Moves the schema, data, storage buckets and edge functions of a hosted
backend project between environments, and produces/consumes durable backup
archives of that state.
"""

__version__ = "0.1.0"

from supamigrate.models.config import ProjectEndpoint, SupamigrateConfig
from supamigrate.models.session import MigrationOutcome, MigrationScope, MigrationStatus

__all__ = [
    "ProjectEndpoint",
    "SupamigrateConfig",
    "MigrationOutcome",
    "MigrationScope",
    "MigrationStatus",
]
