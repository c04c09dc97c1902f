"""Pydantic models for farmsync configuration.

Configuration-domain models:
- Store profiles: ``StoreProfile``
- Local durable cache: ``LocalCacheSettings``
- Outbox replay / snapshot pull: ``SyncSettings``
- Complete file: ``FarmSyncConfig``

Module definitions (``ModuleDef``, ``EntityDef``) live in
farmsync.config.modules.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from farmsync.config.modules import DEFAULT_MODULES, ModuleDef

# Thirty days: the "last known good" window used by every fallback read
DEFAULT_FALLBACK_MAX_AGE_SECONDS = 60 * 60 * 24 * 30


class StoreProfile(BaseModel):
    """Primary store connection profile from farmsync.toml.

    Example:
        >>> profile = StoreProfile(url="postgresql://localhost/farmsuite")
        >>> profile.provider
        'postgres'
    """

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution
    provider: str = "postgres"


class LocalCacheSettings(BaseModel):
    """Location and read tolerances of the local durable cache."""

    path: Path = Path("data/farmsync_local_cache.sqlite")
    ttl_seconds: int = 45
    fallback_max_age_seconds: int = DEFAULT_FALLBACK_MAX_AGE_SECONDS


class SyncSettings(BaseModel):
    """Defaults for outbox replay and snapshot pull."""

    replay_limit: int = 50
    pull_page_size: int = 100

    @field_validator("replay_limit")
    @classmethod
    def _clamp_replay_limit(cls, value: int) -> int:
        return min(250, max(1, value))

    @field_validator("pull_page_size")
    @classmethod
    def _clamp_pull_page_size(cls, value: int) -> int:
        return min(250, max(10, value))


class FarmSyncConfig(BaseModel):
    """Complete configuration from farmsync.toml."""

    profiles: dict[str, StoreProfile] = Field(default_factory=dict)
    local_cache: LocalCacheSettings = Field(default_factory=LocalCacheSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    modules: list[ModuleDef] = Field(default_factory=lambda: list(DEFAULT_MODULES))
