"""
Configuration models for Supamigrate.

This module defines the pydantic models for the TOML configuration file
and the immutable endpoint objects resolved from it for one operation.
"""

import os
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from supamigrate.core.exceptions import ConfigurationError, ProjectNotFoundError

CONFIG_ENV_VAR = "SUPAMIGRATE_CONFIG"

DEFAULT_CONFIG_PATHS = [
    "./supamigrate.toml",
    "~/.config/supamigrate/config.toml",
    "~/.supamigrate.toml",
]

DEFAULT_MANAGEMENT_API_URL = "https://api.supabase.com"

DEFAULT_EXCLUDED_SCHEMAS = [
    "extensions",
    "graphql",
    "graphql_public",
    "net",
    "pgbouncer",
    "pgsodium",
    "pgsodium_masks",
    "realtime",
    "supabase_functions",
    "storage",
    "pg_*",
    "information_schema",
]


class CollisionPolicy(str, Enum):
    """What the transfer engine does when the target already holds a key with a different size."""
    OVERWRITE = "overwrite"
    FAIL = "fail"


class ProjectConfig(BaseModel):
    """One configured project."""
    project_ref: str
    db_password: Optional[str] = None
    service_key: Optional[str] = None
    management_token: Optional[str] = None
    db_host: Optional[str] = None
    db_port: int = 5432
    db_user: str = "postgres"
    db_name: str = "postgres"
    db_sslmode: Optional[str] = "require"
    api_url: Optional[str] = None
    management_api_url: str = DEFAULT_MANAGEMENT_API_URL

    @field_validator('project_ref')
    @classmethod
    def project_ref_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('project_ref must not be empty')
        return v.strip()

    @field_validator('db_port')
    @classmethod
    def port_in_range(cls, v):
        if not 0 < v < 65536:
            raise ValueError('db_port must be between 1 and 65535')
        return v


class DefaultsConfig(BaseModel):
    """Defaults shared by every command."""
    parallel_transfers: int = Field(default=4, ge=1, le=64)
    parallel_functions: int = Field(default=2, ge=1, le=16)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0.0)
    listing_attempts: int = Field(default=3, ge=1, le=10)
    request_timeout: float = Field(default=60.0, gt=0)
    subprocess_stall_timeout: float = Field(default=300.0, gt=0)
    stream_threshold: int = Field(default=8 * 1024 * 1024, ge=0)
    skip_existing: bool = False
    collision_policy: CollisionPolicy = CollisionPolicy.OVERWRITE
    compress_backups: bool = True
    excluded_schemas: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDED_SCHEMAS))


class SupamigrateConfig(BaseModel):
    """Top-level configuration file."""
    projects: Dict[str, ProjectConfig] = Field(default_factory=dict)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "SupamigrateConfig":
        """
        Load configuration from an explicit path or the default locations.

        Returns an empty configuration when no file exists.
        """
        if path is not None:
            return cls.load_from_path(Path(path))

        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            return cls.load_from_path(Path(env_path))

        for default_path in DEFAULT_CONFIG_PATHS:
            candidate = Path(default_path).expanduser()
            if candidate.exists():
                return cls.load_from_path(candidate)

        return cls()

    @classmethod
    def load_from_path(cls, path: Path) -> "SupamigrateConfig":
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(f"Cannot read configuration {path}: {e}")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration {path}: {e}")

    def get_project(self, name: str) -> ProjectConfig:
        """Get a project by alias, then by project_ref."""
        if name in self.projects:
            return self.projects[name]
        for project in self.projects.values():
            if project.project_ref == name:
                return project
        raise ProjectNotFoundError(f"Project not found: {name}", details={"project": name})


@dataclass(frozen=True)
class DatabaseDescriptor:
    """Connection parameters for one Postgres database."""
    host: str
    port: int
    user: str
    database: str
    password: str = field(repr=False)
    sslmode: Optional[str] = None

    def to_env(self) -> Dict[str, str]:
        """Connection parameters as libpq environment variables."""
        env = {
            "PGHOST": self.host,
            "PGPORT": str(self.port),
            "PGUSER": self.user,
            "PGDATABASE": self.database,
            "PGPASSWORD": self.password,
        }
        if self.sslmode:
            env["PGSSLMODE"] = self.sslmode
        return env

    def __repr__(self) -> str:
        return f"DatabaseDescriptor(host={self.host!r}, port={self.port}, user={self.user!r}, database={self.database!r})"


@dataclass(frozen=True)
class ProjectEndpoint:
    """Fully resolved, immutable description of one remote project."""
    project_ref: str
    database: Optional[DatabaseDescriptor]
    api_url: str
    service_key: Optional[str] = field(default=None, repr=False)
    management_token: Optional[str] = field(default=None, repr=False)
    management_api_url: str = DEFAULT_MANAGEMENT_API_URL

    def secrets(self) -> List[str]:
        """Every credential held by this endpoint."""
        values = [self.service_key, self.management_token]
        if self.database:
            values.append(self.database.password)
        return [v for v in values if v]

    def require_database(self) -> DatabaseDescriptor:
        if self.database is None:
            raise ConfigurationError(f"Project {self.project_ref} has no db_password configured")
        return self.database

    def require_service_key(self) -> str:
        if not self.service_key:
            raise ConfigurationError(
                f"Project {self.project_ref} requires service_key for storage operations"
            )
        return self.service_key

    def require_management_token(self) -> str:
        if not self.management_token:
            raise ConfigurationError(
                f"Project {self.project_ref} requires management_token for edge function operations"
            )
        return self.management_token

    def __repr__(self) -> str:
        return f"ProjectEndpoint(project_ref={self.project_ref!r}, api_url={self.api_url!r})"


def resolve_endpoint(project: ProjectConfig) -> ProjectEndpoint:
    """Resolve a configured project into an immutable endpoint."""
    database = None
    if project.db_password:
        database = DatabaseDescriptor(
            host=project.db_host or f"db.{project.project_ref}.supabase.co",
            port=project.db_port,
            user=project.db_user,
            database=project.db_name,
            password=project.db_password,
            sslmode=project.db_sslmode,
        )
    return ProjectEndpoint(
        project_ref=project.project_ref,
        database=database,
        api_url=(project.api_url or f"https://{project.project_ref}.supabase.co").rstrip("/"),
        service_key=project.service_key,
        management_token=project.management_token,
        management_api_url=project.management_api_url.rstrip("/"),
    )


def generate_sample_config() -> str:
    """Generate a sample configuration file."""
    schemas = ",\n".join(f'    "{s}"' for s in DEFAULT_EXCLUDED_SCHEMAS)
    return f'''# Supamigrate configuration

[projects.production]
project_ref = "your-prod-project-ref"
db_password = "your-db-password"
service_key = "your-service-role-key"      # storage operations
management_token = "your-access-token"     # edge functions

[projects.staging]
project_ref = "your-staging-project-ref"
db_password = "your-db-password"
service_key = "your-service-role-key"

[defaults]
parallel_transfers = 4
parallel_functions = 2
compress_backups = true
collision_policy = "overwrite"
excluded_schemas = [
{schemas}
]
'''


def config_summary(config: SupamigrateConfig) -> Dict[str, Any]:
    """Describe the configuration without any credential values."""
    return {
        "projects": {
            alias: {
                "project_ref": p.project_ref,
                "database": bool(p.db_password),
                "storage": bool(p.service_key),
                "functions": bool(p.management_token),
            }
            for alias, p in config.projects.items()
        },
        "defaults": config.defaults.model_dump(mode="json"),
    }
