"""Configuration management: profiles, TOML loading, modules, and config models.

Usage:
    >>> from farmsync.config import load_config, FarmSyncConfig, ModuleRegistry
"""

from farmsync.config.loader import load_config
from farmsync.config.models import (
    FarmSyncConfig,
    LocalCacheSettings,
    StoreProfile,
    SyncSettings,
)
from farmsync.config.modules import (
    DEFAULT_MODULES,
    EntityDef,
    ModuleDef,
    ModuleRegistry,
)

__all__ = [
    "load_config",
    "FarmSyncConfig",
    "LocalCacheSettings",
    "StoreProfile",
    "SyncSettings",
    "DEFAULT_MODULES",
    "EntityDef",
    "ModuleDef",
    "ModuleRegistry",
]
