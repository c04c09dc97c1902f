"""CLI module for the farmsync offline data-access core.

Provides commands for store profile management, outbox replay, snapshot
pull and entity schema inspection.

Usage:
    DB_PROFILE=local farmsync connect
    farmsync status
    farmsync profiles
    farmsync push --limit 100
    farmsync pull --user-id 3 --farm-id 7 --modules TASKS,FEEDS
    farmsync schema TASKS tasks
    farmsync outbox

Commands:
    connect   - Connect to the primary store and check module tables
    status    - Show profile, primary reachability, outbox and cache state
    profiles  - List available profiles
    push      - Replay queued offline writes against the primary store
    pull      - Refresh local snapshots for a user's modules
    schema    - Show the exposable schema of one module entity
    outbox    - List pending and failed outbox items
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from farmsync.cache.outbox import Outbox
from farmsync.cache.store import LocalStore
from farmsync.config.loader import load_config
from farmsync.config.models import FarmSyncConfig
from farmsync.config.modules import ModuleRegistry
from farmsync.factory import (
    ProfileNotFoundError,
    build_service,
    connect_and_validate,
    get_store,
    read_profile_lock,
)
from farmsync.records.engine import RecordEngine
from farmsync.schema.introspector import SchemaIntrospector
from farmsync.service import Caller

console = Console()


def _config_path(args: argparse.Namespace) -> Path | None:
    path = getattr(args, "config", None)
    return Path(path) if path else None


def _load(args: argparse.Namespace) -> FarmSyncConfig:
    return load_config(
        _config_path(args),
        env_prefix=getattr(args, "env_prefix", ""),
        missing_ok=True,
    )


def _format_ms(value: int) -> str:
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_connect(args: argparse.Namespace) -> int:
    """Async implementation for connect command.

    Args:
        args: Parsed arguments with env_prefix and config.

    Returns:
        0 on success, 1 on failure.
    """
    env_prefix = getattr(args, "env_prefix", "")

    previous_profile = read_profile_lock()

    console.print("Connecting to primary store...", style="dim")

    result = await connect_and_validate(
        env_prefix=env_prefix, config_path=_config_path(args)
    )

    if not result.success:
        console.print()
        console.print(f"[bold red]x[/bold red] {result.error}")
        return 1

    console.print()
    console.print(
        f"[bold green]v[/bold green] Connected to profile: "
        f"[bold cyan]{result.profile_name}[/bold cyan]"
    )
    console.print(f"  Module tables found: [green]{len(result.tables_found)}[/green]")
    if result.missing_tables:
        console.print(
            f"  Missing tables: [yellow]{', '.join(result.missing_tables)}[/yellow]"
        )

    if previous_profile and previous_profile != result.profile_name:
        console.print(
            f"\n[dim]Switched from[/dim] [bold]{previous_profile}[/bold] "
            f"[dim]to[/dim] [bold cyan]{result.profile_name}[/bold cyan]"
        )

    return 0


async def _async_status(args: argparse.Namespace) -> int:
    """Async implementation for status command.

    Reports local cache and outbox state even when no primary store is
    configured.

    Returns:
        0 always (informational command).
    """
    env_prefix = getattr(args, "env_prefix", "")
    config = _load(args)

    table = Table(title="Sync Status", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    profile = read_profile_lock()
    table.add_row(
        "Current profile",
        f"[bold cyan]{profile}[/bold cyan]" if profile else "[yellow]none[/yellow]",
    )

    try:
        store = get_store(env_prefix=env_prefix, config_path=_config_path(args))
    except (ProfileNotFoundError, KeyError) as e:
        local_store = LocalStore(config.local_cache.path)
        try:
            stats = local_store.stats()
            outbox_stats = Outbox(local_store).stats()
        finally:
            local_store.close()
        table.add_row("Primary store", f"[yellow]not configured[/yellow] ({e})")
        local_db_file = stats.file_path
    else:
        service = build_service(config, store)
        try:
            status = await service.sync_status()
        finally:
            await store.close()
        if status.primary_available:
            table.add_row("Primary store", "[bold green]v[/bold green] available")
        else:
            table.add_row(
                "Primary store",
                f"[bold red]x[/bold red] unavailable ({status.primary_error or 'no response'})",
            )
        stats = status.local_cache
        outbox_stats = status.outbox
        local_db_file = status.local_db_file

    table.add_row("Local cache file", local_db_file)
    table.add_row("Cache file size", f"{stats.file_size_bytes} bytes")
    table.add_row("Response cache", str(stats.response_cache_count))
    table.add_row("List snapshots", str(stats.entity_list_snapshot_count))
    table.add_row("Record snapshots", str(stats.entity_record_snapshot_count))
    table.add_row(
        "Outbox",
        f"{outbox_stats.pending_count} pending, {outbox_stats.failed_count} failed, "
        f"{outbox_stats.done_count} done",
    )

    console.print(table)
    return 0


async def _async_push(args: argparse.Namespace) -> int:
    """Async implementation for push command.

    Returns:
        0 when every replayed item was applied, 1 otherwise.
    """
    env_prefix = getattr(args, "env_prefix", "")
    config = _load(args)
    limit = args.limit if args.limit is not None else config.sync.replay_limit

    try:
        store = get_store(env_prefix=env_prefix, config_path=_config_path(args))
    except (ProfileNotFoundError, KeyError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    service = build_service(config, store)
    try:
        response = await service.replay(limit)
    finally:
        await store.close()

    if not response.ok:
        console.print(f"[bold red]x[/bold red] {response.message} {response.detail or ''}")
        return 1

    data = response.data
    console.print(
        f"[bold green]v[/bold green] Replayed {data['succeeded']}/{data['attempted']} "
        f"outbox items"
    )
    stats = data["stats"]
    console.print(
        f"  Remaining: {stats['pending_count']} pending, {stats['failed_count']} failed"
    )
    return 0 if data["failed"] == 0 else 1


async def _async_pull(args: argparse.Namespace) -> int:
    """Async implementation for pull command.

    Returns:
        0 when every entity was cached, 1 otherwise.
    """
    env_prefix = getattr(args, "env_prefix", "")
    config = _load(args)
    page_size = args.page_size if args.page_size is not None else config.sync.pull_page_size
    module_keys = [m.strip() for m in args.modules.split(",")] if args.modules else None

    try:
        store = get_store(env_prefix=env_prefix, config_path=_config_path(args))
    except (ProfileNotFoundError, KeyError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    service = build_service(config, store)
    caller = Caller(user_id=args.user_id, farm_id=args.farm_id)
    try:
        response = await service.pull(caller, module_keys=module_keys, page_size=page_size)
    finally:
        await store.close()

    if not response.ok:
        console.print(f"[bold red]x[/bold red] {response.message} {response.detail or ''}")
        return 1

    data = response.data
    console.print(
        f"[bold green]v[/bold green] Cached {data['entities_synced']} entities "
        f"({data['rows_cached']} rows) across {data['modules_considered']} modules"
    )

    if data["failed_entities"]:
        table = Table(title="Failed Entities", show_header=True, header_style="bold")
        table.add_column("Module")
        table.add_column("Table")
        table.add_column("Error", style="red")
        for failure in data["failed_entities"]:
            table.add_row(failure["module_key"], failure["table"], failure["error"])
        console.print(table)

    return 0 if data["failures"] == 0 else 1


async def _async_schema(args: argparse.Namespace) -> int:
    """Async implementation for schema command.

    Returns:
        0 on success, 1 if the entity is unknown or the store fails.
    """
    env_prefix = getattr(args, "env_prefix", "")
    config = _load(args)

    try:
        store = get_store(env_prefix=env_prefix, config_path=_config_path(args))
    except (ProfileNotFoundError, KeyError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    registry = ModuleRegistry(config.modules)
    engine = RecordEngine(registry, SchemaIntrospector(registry))
    try:
        async with store.connect() as conn:
            view = await engine.get_entity_schema(conn, args.module, args.table)
    finally:
        await store.close()

    if view is None:
        console.print(
            f"[red]Error: entity {args.module}/{args.table} not found[/red]"
        )
        return 1

    table = Table(
        title=f"{view.module_key} / {view.table} ({view.entity_label})",
        show_header=True,
        header_style="bold",
    )
    table.add_column("Column")
    table.add_column("Type")
    table.add_column("Nullable")
    table.add_column("Read-only")
    table.add_column("Options")

    for field in view.fields:
        name = field.name
        if field.name == view.primary_key:
            name = f"[bold cyan]{field.name}[/bold cyan]"
        table.add_row(
            name,
            field.field_type,
            "yes" if field.nullable else "no",
            "yes" if field.read_only else "",
            ", ".join(field.enum_values),
        )

    console.print(table)
    return 0


# ============================================================================
# Command wrappers
# ============================================================================


def cmd_connect(args: argparse.Namespace) -> int:
    """Connect to the primary store and check module tables.

    Wraps async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_connect(args))


def cmd_status(args: argparse.Namespace) -> int:
    """Show profile, primary reachability, outbox and cache state."""
    return asyncio.run(_async_status(args))


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from farmsync.toml.

    Reads only local TOML config -- no store calls.

    Returns:
        0 on success, 1 if farmsync.toml not found.
    """
    try:
        config = load_config(
            _config_path(args), env_prefix=getattr(args, "env_prefix", "")
        )
    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    current = read_profile_lock()

    table = Table(title="Store Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Provider")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        name_style = "bold cyan" if name == current else ""
        table.add_row(
            marker,
            f"[{name_style}]{name}[/{name_style}]" if name_style else name,
            profile.provider,
            profile.description or "",
        )

    console.print(table)

    if current:
        console.print("\n[bold green]*[/bold green] = current profile")

    return 0


def cmd_push(args: argparse.Namespace) -> int:
    """Replay queued offline writes."""
    return asyncio.run(_async_push(args))


def cmd_pull(args: argparse.Namespace) -> int:
    """Refresh local snapshots for a user's modules."""
    return asyncio.run(_async_pull(args))


def cmd_schema(args: argparse.Namespace) -> int:
    """Show the exposable schema of one module entity."""
    return asyncio.run(_async_schema(args))


def cmd_outbox(args: argparse.Namespace) -> int:
    """List pending and failed outbox items.

    Reads only the local cache file -- no store calls.

    Returns:
        0 always (informational command).
    """
    config = _load(args)
    local_store = LocalStore(config.local_cache.path)
    try:
        outbox = Outbox(local_store)
        items = outbox.pending(args.limit)
        stats = outbox.stats()
    finally:
        local_store.close()

    if not items:
        console.print("[green]Outbox is empty.[/green]")
        return 0

    table = Table(title="Outbox", show_header=True, header_style="bold")
    table.add_column("ID", justify="right")
    table.add_column("Action")
    table.add_column("Entity")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Queued")
    table.add_column("Last error", style="red")

    for item in items:
        entity = f"{item.payload.get('module_key', '?')}/{item.payload.get('table', '?')}"
        table.add_row(
            str(item.outbox_id),
            item.action_key,
            entity,
            item.status.value,
            str(item.attempts),
            _format_ms(item.created_at),
            item.last_error or "",
        )

    console.print(table)
    console.print(
        f"\n{stats.pending_count} pending, {stats.failed_count} failed, "
        f"{stats.done_count} done"
    )
    return 0


# ============================================================================
# Main entry point
# ============================================================================


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = argparse.ArgumentParser(
        prog="farmsync",
        description="Offline-resilient data access for farm modules",
    )

    # Global options
    parser.add_argument(
        "--env-prefix",
        default="",
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix FARM_ reads FARM_DB_PROFILE)"
        ),
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to farmsync.toml (default: ./farmsync.toml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # connect command
    p_connect = subparsers.add_parser(
        "connect",
        help="Connect to the primary store and check module tables",
    )
    p_connect.set_defaults(func=cmd_connect)

    # status command
    p_status = subparsers.add_parser(
        "status",
        help="Show profile, primary reachability, outbox and cache state",
    )
    p_status.set_defaults(func=cmd_status)

    # profiles command
    p_profiles = subparsers.add_parser(
        "profiles",
        help="List available profiles",
    )
    p_profiles.set_defaults(func=cmd_profiles)

    # push command
    p_push = subparsers.add_parser(
        "push",
        help="Replay queued offline writes against the primary store",
    )
    p_push.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum items to replay (default: [sync] replay_limit)",
    )
    p_push.set_defaults(func=cmd_push)

    # pull command
    p_pull = subparsers.add_parser(
        "pull",
        help="Refresh local snapshots for a user's modules",
    )
    p_pull.add_argument(
        "--user-id",
        type=int,
        required=True,
        help="User whose module access is pulled",
    )
    p_pull.add_argument(
        "--farm-id",
        type=int,
        required=True,
        help="Farm (tenant) whose rows are pulled",
    )
    p_pull.add_argument(
        "--modules",
        default=None,
        help="Comma-separated module keys to pull (e.g., TASKS,FEEDS)",
    )
    p_pull.add_argument(
        "--page-size",
        type=int,
        default=None,
        help="Rows per entity (default: [sync] pull_page_size)",
    )
    p_pull.set_defaults(func=cmd_pull)

    # schema command
    p_schema = subparsers.add_parser(
        "schema",
        help="Show the exposable schema of one module entity",
    )
    p_schema.add_argument("module", help="Module key (e.g., TASKS)")
    p_schema.add_argument("table", help="Entity table (e.g., tasks)")
    p_schema.set_defaults(func=cmd_schema)

    # outbox command
    p_outbox = subparsers.add_parser(
        "outbox",
        help="List pending and failed outbox items",
    )
    p_outbox.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum items to list",
    )
    p_outbox.set_defaults(func=cmd_outbox)

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
