from __future__ import annotations

from .cleanup import CleanupConfig, TaxonomyCleanupEngine
from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import CleanupStateError, ConfigError
from .jobs import JobRegistry
from .pipeline import TaxonomyPipeline
from .storage import SQLiteGraphStore

__all__ = [
    "AppConfig",
    "CleanupConfig",
    "CleanupStateError",
    "ConfigError",
    "JobRegistry",
    "SQLiteGraphStore",
    "TaxonomyCleanupEngine",
    "TaxonomyPipeline",
    "config_sha256",
    "load_config",
    "resolve_runtime_secrets",
]
