"""
Session models for Supamigrate.

This module defines the migration scope selected by the user and the
phase-by-phase outcome the orchestrator reports back.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ScopeMode(str, Enum):
    """Which parts of the database snapshot are moved."""
    SCHEMA_ONLY = "schema_only"
    DATA_ONLY = "data_only"
    FULL = "full"


class MigrationScope(BaseModel):
    """Selection of phases and filters for one operation."""
    mode: ScopeMode = ScopeMode.FULL
    include_storage: bool = False
    include_functions: bool = False
    include_database: bool = True
    excluded_schemas: List[str] = Field(default_factory=list)
    excluded_tables: List[str] = Field(default_factory=list)
    bucket_filter: Optional[List[str]] = None
    function_filter: Optional[List[str]] = None

    model_config = {"frozen": True}

    @classmethod
    def from_flags(cls, schema_only: bool = False, data_only: bool = False, **kwargs) -> "MigrationScope":
        if schema_only and data_only:
            raise ValueError("schema_only and data_only are mutually exclusive")
        mode = ScopeMode.SCHEMA_ONLY if schema_only else ScopeMode.DATA_ONLY if data_only else ScopeMode.FULL
        return cls(mode=mode, **kwargs)

    @property
    def schema_only(self) -> bool:
        return self.mode == ScopeMode.SCHEMA_ONLY

    @property
    def data_only(self) -> bool:
        return self.mode == ScopeMode.DATA_ONLY

    @property
    def runs_database(self) -> bool:
        return self.include_database

    @property
    def runs_storage(self) -> bool:
        # schema-only never touches storage, whatever the flags say
        return self.include_storage and self.mode != ScopeMode.SCHEMA_ONLY

    @property
    def runs_functions(self) -> bool:
        return self.include_functions and self.mode != ScopeMode.SCHEMA_ONLY


class PhaseName(str, Enum):
    """Orchestration phases, in execution order."""
    INIT = "init"
    SCHEMA_DATA = "schema_data"
    STORAGE = "storage"
    FUNCTIONS = "functions"
    FINALIZE = "finalize"


class PhaseStatus(str, Enum):
    """Terminal status of one phase."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_WARNINGS = "succeeded_with_warnings"
    FAILED = "failed"
    SKIPPED = "skipped"


class MigrationStatus(str, Enum):
    """Terminal status of a whole operation."""
    SUCCESS = "success"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ABORTED = "aborted"


class ItemFailure(BaseModel):
    """One failed object, statement or function inside a phase."""
    item: str
    kind: str
    message: str


class PhaseResult(BaseModel):
    """Outcome of one phase."""
    phase: PhaseName
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    summary: str = ""
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    failures: List[ItemFailure] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def attempted(self) -> bool:
        return self.status not in (PhaseStatus.PENDING, PhaseStatus.SKIPPED)

    @property
    def succeeded(self) -> bool:
        return self.status in (PhaseStatus.SUCCEEDED, PhaseStatus.SUCCEEDED_WITH_WARNINGS)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class MigrationOutcome(BaseModel):
    """Aggregate result of migrate, backup or restore."""
    operation: str
    status: MigrationStatus = MigrationStatus.SUCCESS
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    phases: List[PhaseResult] = Field(default_factory=list)
    plan: Dict[str, Any] = Field(default_factory=dict)
    artifact_path: Optional[str] = None

    def phase(self, name: PhaseName) -> Optional[PhaseResult]:
        for result in self.phases:
            if result.phase == name:
                return result
        return None

    @property
    def exit_code(self) -> int:
        return {
            MigrationStatus.SUCCESS: 0,
            MigrationStatus.COMPLETED_WITH_ERRORS: 1,
            MigrationStatus.ABORTED: 2,
        }[self.status]

    def finalize(self) -> "MigrationOutcome":
        """Compute the terminal status from the recorded phases."""
        self.finished_at = datetime.now(timezone.utc)
        init = self.phase(PhaseName.INIT)
        if init is not None and init.status == PhaseStatus.FAILED:
            self.status = MigrationStatus.ABORTED
        elif all(p.succeeded for p in self.phases if p.attempted):
            self.status = MigrationStatus.SUCCESS
        else:
            self.status = MigrationStatus.COMPLETED_WITH_ERRORS
        return self
