"""Outbox replay and snapshot pull.

Usage:
    from farmsync.sync import replay_outbox, pull_entity_snapshots
"""

from farmsync.sync.replay import (
    FailedEntity,
    ModuleAccessResolver,
    PullResult,
    ReplayResult,
    pull_entity_snapshots,
    replay_outbox,
)

__all__ = [
    "FailedEntity",
    "ModuleAccessResolver",
    "PullResult",
    "ReplayResult",
    "pull_entity_snapshots",
    "replay_outbox",
]
