"""Primary store and service factory.

Supports two configuration modes:
1. Profile mode (farmsync.toml + .farmsync-profile): named store profiles,
   validated once by ``connect_and_validate`` and remembered in a lock file
2. Legacy mode (``DATABASE_URL`` env var): single store URL

Usage:
    from farmsync.factory import get_store, build_service
    from farmsync.config import load_config

    config = load_config(missing_ok=True)
    service = build_service(config, get_store())
"""

import os
import time
from collections.abc import Callable
from pathlib import Path
from urllib.parse import quote

from pydantic import BaseModel, Field
from sqlalchemy import text

from farmsync.adapters.postgres import AsyncPostgresStore
from farmsync.cache.outbox import Outbox
from farmsync.cache.snapshots import LocalCache
from farmsync.cache.store import LocalStore
from farmsync.config.loader import DEFAULT_CONFIG_FILE, load_config
from farmsync.config.models import FarmSyncConfig, StoreProfile
from farmsync.config.modules import ModuleRegistry
from farmsync.records.engine import RecordEngine
from farmsync.schema.introspector import SchemaIntrospector
from farmsync.service import RecordService
from farmsync.sync.replay import ModuleAccessResolver

# Profile lock file name (resolved against the current working directory)
_PROFILE_LOCK_FILE = ".farmsync-profile"

_TABLES_QUERY = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = current_schema()
      AND table_type = 'BASE TABLE'
"""


class ProfileNotFoundError(Exception):
    """Raised when no store profile is configured."""

    pass


class ConnectionResult(BaseModel):
    """Result of ``connect_and_validate``.

    Attributes:
        success: Whether the store was reachable.
        profile_name: Profile that was tried.
        tables_found: Allow-listed tables present in the store.
        missing_tables: Allow-listed tables absent from the store.
        error: Failure reason when ``success`` is ``False``.
    """

    success: bool
    profile_name: str | None = None
    tables_found: list[str] = Field(default_factory=list)
    missing_tables: list[str] = Field(default_factory=list)
    error: str | None = None


# ============================================================================
# Profile Lock File Operations
# ============================================================================


def _lock_path() -> Path:
    return Path.cwd() / _PROFILE_LOCK_FILE


def read_profile_lock() -> str | None:
    """Read profile name from lock file.

    Returns:
        Profile name if lock file exists, None otherwise
    """
    path = _lock_path()
    if path.exists():
        return path.read_text().strip() or None
    return None


def write_profile_lock(profile_name: str) -> None:
    """Write profile name to lock file.

    Only call this after a successful connection check.
    """
    _lock_path().write_text(profile_name)


def clear_profile_lock() -> None:
    """Remove profile lock file."""
    path = _lock_path()
    if path.exists():
        path.unlink()


def get_active_profile_name(env_prefix: str = "") -> str:
    """Get active profile name from env var or lock file.

    Priority:
    1. ``{env_prefix}DB_PROFILE`` env var (initial connect or CI/CD)
    2. .farmsync-profile lock file (profile from a previous connect)
    3. Raise ProfileNotFoundError

    Raises:
        ProfileNotFoundError: If no profile is configured
    """
    env_profile = os.environ.get(f"{env_prefix}DB_PROFILE")
    if env_profile:
        return env_profile

    lock_profile = read_profile_lock()
    if lock_profile:
        return lock_profile

    raise ProfileNotFoundError(
        "No store profile configured.\n"
        f"Run: {env_prefix}DB_PROFILE=<name> farmsync connect"
    )


def get_active_profile(
    env_prefix: str = "",
    config_path: Path | None = None,
) -> tuple[str, StoreProfile]:
    """Get active profile name and configuration.

    Raises:
        ProfileNotFoundError: If no profile configured
        FileNotFoundError: If farmsync.toml does not exist
        KeyError: If the profile is not defined in farmsync.toml
    """
    profile_name = get_active_profile_name(env_prefix)
    config = load_config(config_path, env_prefix=env_prefix)

    if profile_name not in config.profiles:
        raise KeyError(
            f"Profile '{profile_name}' not found in {DEFAULT_CONFIG_FILE}.\n"
            f"Available profiles: {', '.join(config.profiles.keys())}"
        )

    return profile_name, config.profiles[profile_name]


def resolve_url(profile: StoreProfile) -> str:
    """Resolve profile URL with password substitution.

    Example:
        >>> resolve_url(StoreProfile(url="postgresql://u:[YOUR-PASSWORD]@h/db", db_password="p@ss"))
        'postgresql://u:p%40ss@h/db'
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


# ============================================================================
# Store and Service Factory
# ============================================================================


def get_store(
    profile_name: str | None = None,
    env_prefix: str = "",
    config_path: Path | None = None,
) -> AsyncPostgresStore:
    """Create the primary store for the active configuration.

    1. Profile mode (farmsync.toml exists): the given or active profile.
    2. Legacy mode: ``{env_prefix}DATABASE_URL``.

    Raises:
        ProfileNotFoundError: If no store configuration is found
        KeyError: If the named profile is not defined
    """
    config_file = config_path or Path.cwd() / DEFAULT_CONFIG_FILE
    if config_file.exists():
        try:
            name = profile_name or get_active_profile_name(env_prefix)
            config = load_config(config_file, env_prefix=env_prefix)
            if name not in config.profiles:
                raise KeyError(
                    f"Profile '{name}' not found. "
                    f"Available: {', '.join(config.profiles.keys())}"
                )
            return AsyncPostgresStore(resolve_url(config.profiles[name]))
        except ProfileNotFoundError:
            # Fall through to legacy mode
            pass

    database_url = os.environ.get(f"{env_prefix}DATABASE_URL")
    if database_url:
        return AsyncPostgresStore(database_url)

    raise ProfileNotFoundError(
        "No store configuration found.\n"
        "Either:\n"
        f"  1. Create {DEFAULT_CONFIG_FILE} and run: "
        f"{env_prefix}DB_PROFILE=<name> farmsync connect\n"
        f"  2. Set {env_prefix}DATABASE_URL"
    )


def build_service(
    config: FarmSyncConfig,
    store: AsyncPostgresStore,
    module_access: ModuleAccessResolver | None = None,
    clock: Callable[[], float] = time.time,
) -> RecordService:
    """Wire registry, introspector, engine, local store and outbox together.

    Opens (and creates if needed) the local SQLite file named by
    ``config.local_cache.path``.
    """
    registry = ModuleRegistry(config.modules)
    engine = RecordEngine(registry, SchemaIntrospector(registry))
    local_store = LocalStore(config.local_cache.path, clock=clock)

    return RecordService(
        store,
        engine,
        LocalCache(local_store, default_max_age_seconds=config.local_cache.ttl_seconds),
        Outbox(local_store),
        module_access=module_access,
        fallback_max_age_seconds=config.local_cache.fallback_max_age_seconds,
    )


async def connect_and_validate(
    profile_name: str | None = None,
    env_prefix: str = "",
    config_path: Path | None = None,
) -> ConnectionResult:
    """Connect to a profile and report which allow-listed tables exist.

    Writes the profile lock file on success so later commands use the
    same profile without ``DB_PROFILE``.

    Example:
        >>> result = await connect_and_validate("local")
        >>> if result.success:
        ...     print(f"Connected to {result.profile_name}")
    """
    if profile_name is None:
        try:
            profile_name = get_active_profile_name(env_prefix)
        except ProfileNotFoundError as e:
            return ConnectionResult(success=False, error=str(e))

    try:
        config = load_config(config_path, env_prefix=env_prefix)
    except FileNotFoundError as e:
        return ConnectionResult(success=False, profile_name=profile_name, error=str(e))

    if profile_name not in config.profiles:
        available = ", ".join(config.profiles.keys())
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            error=f"Profile '{profile_name}' not found. Available: {available}",
        )

    store = AsyncPostgresStore(resolve_url(config.profiles[profile_name]))
    try:
        async with store.connect() as conn:
            result = await conn.execute(text(_TABLES_QUERY))
            existing = {str(row[0]) for row in result.fetchall()}
    except Exception as e:
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            error=f"Failed to connect to database: {e}",
        )
    finally:
        await store.close()

    allowed = sorted(ModuleRegistry(config.modules).table_to_module_map())
    write_profile_lock(profile_name)

    return ConnectionResult(
        success=True,
        profile_name=profile_name,
        tables_found=[t for t in allowed if t in existing],
        missing_tables=[t for t in allowed if t not in existing],
    )
