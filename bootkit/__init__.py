"""
bootkit - Manifest-driven project bootstrapper

Runs declared setup operations in phase and dependency order, protecting
their outputs with backups and rolling back on rollback-triggering errors.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = [
    "ConfigStore",
    "load_config",
    "resolve_paths",
    "ManifestRegistry",
    "HandlerRegistry",
    "Orchestrator",
    "RunRequest",
]

from .config import ConfigStore, load_config, resolve_paths
from .handlers import HandlerRegistry
from .registry import ManifestRegistry
from .orchestrator import Orchestrator, RunRequest
