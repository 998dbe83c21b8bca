"""
Command line interface for Supamigrate.
"""

from supamigrate.cli.main import main

__all__ = ["main"]
