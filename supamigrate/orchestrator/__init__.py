"""
Orchestration of migrate, backup and restore operations.
"""

from supamigrate.orchestrator.orchestrator import DiagnosticCheck, MigrationOrchestrator

__all__ = [
    "DiagnosticCheck",
    "MigrationOrchestrator",
]
