"""TOML configuration loader with environment overrides."""

import os
import tomllib
from pathlib import Path

from farmsync.config.models import (
    FarmSyncConfig,
    LocalCacheSettings,
    StoreProfile,
    SyncSettings,
)
from farmsync.config.modules import EntityDef, ModuleDef

DEFAULT_CONFIG_FILE = "farmsync.toml"


def _parse_modules(raw_modules: list[dict]) -> list[ModuleDef]:
    modules: list[ModuleDef] = []
    for raw in raw_modules:
        modules.append(
            ModuleDef(
                module_key=str(raw["key"]).strip().upper(),
                name=raw.get("name", raw["key"]),
                entities=[EntityDef(**entity) for entity in raw.get("entities", [])],
            )
        )
    return modules


def _apply_env_overrides(config: FarmSyncConfig, env_prefix: str) -> FarmSyncConfig:
    """Apply ``<prefix>LOCAL_DB_PATH`` / ``<prefix>CACHE_TTL_SECONDS``."""
    local_path = os.environ.get(f"{env_prefix}LOCAL_DB_PATH")
    if local_path:
        config.local_cache.path = Path(local_path)

    ttl = os.environ.get(f"{env_prefix}CACHE_TTL_SECONDS")
    if ttl:
        try:
            config.local_cache.ttl_seconds = int(ttl)
        except ValueError:
            raise ValueError(
                f"{env_prefix}CACHE_TTL_SECONDS must be an integer, got {ttl!r}"
            ) from None

    return config


def load_config(
    config_path: Path | None = None,
    env_prefix: str = "",
    missing_ok: bool = False,
) -> FarmSyncConfig:
    """Load farmsync configuration from a TOML file.

    Args:
        config_path: Path to the TOML file (default: ``farmsync.toml`` in the
            current working directory).
        env_prefix: Prefix for environment variable overrides
            (e.g. ``"FARM_"`` reads ``FARM_LOCAL_DB_PATH``).
        missing_ok: Return the defaults (plus environment overrides) instead
            of raising when the file does not exist.

    Returns:
        FarmSyncConfig with profiles, cache and sync settings, and modules.
        When the file has no ``[[modules]]`` table, the built-in farm module
        table is used.

    Raises:
        FileNotFoundError: If the config file doesn't exist and
            ``missing_ok`` is ``False``.
        ValueError: If a setting has an invalid format.
    """
    if config_path is None:
        config_path = Path.cwd() / DEFAULT_CONFIG_FILE

    if not config_path.exists():
        if missing_ok:
            return _apply_env_overrides(FarmSyncConfig(), env_prefix)
        raise FileNotFoundError(
            f"farmsync config not found: {config_path}\n"
            f"Create {DEFAULT_CONFIG_FILE} with at least one [profiles.<name>] table."
        )

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    profiles = {
        name: StoreProfile(**profile_data)
        for name, profile_data in data.get("profiles", {}).items()
    }

    config = FarmSyncConfig(
        profiles=profiles,
        local_cache=LocalCacheSettings(**data.get("local_cache", {})),
        sync=SyncSettings(**data.get("sync", {})),
    )

    raw_modules = data.get("modules")
    if raw_modules:
        config.modules = _parse_modules(raw_modules)

    return _apply_env_overrides(config, env_prefix)
