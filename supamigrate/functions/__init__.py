"""
Edge function backup, restore and sync.
"""

from supamigrate.functions.client import (
    FunctionBundle,
    FunctionDescriptor,
    FunctionFile,
    FunctionsClient,
    extract_bundle_files,
)
from supamigrate.functions.sync import (
    FunctionOutcome,
    FunctionResult,
    FunctionSync,
    FunctionSyncOptions,
    FunctionSyncResult,
)

__all__ = [
    "FunctionBundle",
    "FunctionDescriptor",
    "FunctionFile",
    "FunctionsClient",
    "extract_bundle_files",
    "FunctionOutcome",
    "FunctionResult",
    "FunctionSync",
    "FunctionSyncOptions",
    "FunctionSyncResult",
]
