"""Command-line entry point for etagsync."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .configuration import ConfigurationBundle, load_runtime_configuration, resolve_home_dir
from .logging_utils import setup_logging
from .sync import SyncError, SyncResult, TokenStore, build_driver, create_token_store

logger = logging.getLogger("etagsync")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="etagsync",
        description="Apply remote file manifests and commit their eTag only after every file is in place.",
    )
    parser.add_argument("--home", type=Path, default=None, help="Home directory (default: $ETAGSYNC_HOME or ~/.etagsync)")
    parser.add_argument("--log-level", default=None, help="Override logging.level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Sync one or more sources")
    sync_parser.add_argument("sources", nargs="*", help="Source ids (default: all configured)")

    subparsers.add_parser("status", help="Show the committed token of each source")

    manifest_parser = subparsers.add_parser("manifest", help="Fetch and show a source's manifest")
    manifest_parser.add_argument("source", help="Source id")
    return parser


def load_bundle(home: Optional[Path]) -> ConfigurationBundle:
    home_dir = home or resolve_home_dir()
    home_dir.mkdir(parents=True, exist_ok=True)
    return load_runtime_configuration(home_dir)


def configure_logging(bundle: ConfigurationBundle, override: Optional[str] = None) -> Path:
    logging_config = (bundle.merged.get("logging", {}) or {}) if bundle.merged else {}
    env_level = os.environ.get("ETAGSYNC_LOG_LEVEL")
    level_name = (override or env_level or logging_config.get("level") or "WARNING").upper()
    log_path = setup_logging(
        bundle.home_dir,
        level_name,
        structured=bool(logging_config.get("structured", True)),
    )
    bundle.log_path = log_path
    return log_path


def run_sync(bundle: ConfigurationBundle, source_ids: Sequence[str], console: Console) -> int:
    configured = bundle.source_ids()
    targets = list(source_ids) or configured
    unknown = [source_id for source_id in targets if source_id not in configured]
    if unknown:
        console.print(f"[red]Unknown source(s): {escape(', '.join(unknown))}[/red]")
        return 2
    if not targets:
        console.print("No sources configured. Add them under sync.sources.")
        return 0

    token_store = _open_token_store(bundle, console)
    if token_store is None:
        return 1
    results: List[SyncResult] = []
    for source_id in targets:
        driver = build_driver(bundle, source_id, token_store=token_store)
        results.append(driver.sync(source_id))

    console.print(_results_table(results))
    return 0 if all(result.success for result in results) else 1


def run_status(bundle: ConfigurationBundle, console: Console) -> int:
    token_store = _open_token_store(bundle, console)
    if token_store is None:
        return 1
    table = Table(title="Sync Status")
    table.add_column("Source", style="bold")
    table.add_column("Manifest URL")
    table.add_column("Committed Token")

    for source_id in bundle.source_ids():
        source = bundle.source_config(source_id)
        try:
            token = token_store.get_committed_token(source_id)
        except SyncError as e:
            token = f"[red]error: {escape(str(e))}[/red]"
        table.add_row(source_id, escape(source.get("manifest_url", "")), token or "(none)")

    console.print(table)
    return 0


def run_manifest(bundle: ConfigurationBundle, source_id: str, console: Console) -> int:
    if source_id not in bundle.source_ids():
        console.print(f"[red]Unknown source '{escape(source_id)}'[/red]")
        return 2

    token_store = _open_token_store(bundle, console)
    if token_store is None:
        return 1
    driver = build_driver(bundle, source_id, token_store=token_store)
    try:
        snapshot = driver.fetcher.fetch_manifest(source_id)
    except SyncError as e:
        console.print(f"[red]Fetch failed: {escape(str(e))}[/red]")
        return 1

    console.print(f"[bold]Manifest {escape(snapshot.token)}[/bold] ({len(snapshot.entries)} files)\n")
    table = Table(show_header=True)
    table.add_column("Path", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Hash", style="dim", max_width=24)
    for entry in snapshot.entries:
        size = _format_size(entry.size) if entry.size is not None else "?"
        table.add_row(escape(entry.path), size, entry.content_hash)
    console.print(table)
    return 0


def _open_token_store(bundle: ConfigurationBundle, console: Console) -> Optional[TokenStore]:
    try:
        return create_token_store(bundle)
    except SyncError as e:
        logger.error("Cannot open token store: %s", e)
        console.print(f"[red]Token store unavailable: {escape(str(e))}[/red]")
        return None


def _results_table(results: Sequence[SyncResult]) -> Table:
    table = Table(title="Sync Results")
    table.add_column("Source", style="bold")
    table.add_column("Outcome")
    table.add_column("Token")
    table.add_column("Entries", justify="right")
    table.add_column("Detail")

    for result in results:
        if not result.success:
            outcome = f"[red]failed ({result.error.kind})[/red]"
        elif result.applied:
            outcome = "[green]applied[/green]"
        else:
            outcome = "up to date"
        token = result.new_token or result.previous_token or "(none)"
        detail = result.message
        if result.failed_entry is not None:
            detail = f"{result.failed_entry.path}: {detail}"
        table.add_row(result.source_id, outcome, escape(token), str(result.entries_processed), escape(detail))
    return table


def _format_size(size: int) -> str:
    """Format file size in human-readable form."""
    if size < 1024:
        return f"{size} B"
    elif size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    elif size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    else:
        return f"{size / (1024 * 1024 * 1024):.1f} GB"


def main(argv: Optional[Sequence[str]] = None, console: Optional[Console] = None) -> int:
    """Entry point for the ``etagsync`` command."""

    args = build_parser().parse_args(argv)
    console = console or Console()

    bundle = load_bundle(args.home)
    log_path = configure_logging(bundle, args.log_level)
    logger.info("Logging initialized at %s", log_path)
    for diag in bundle.diagnostics:
        if diag.level == "error":
            console.print(f"[red]Configuration error: {escape(diag.message)}[/red]")
    if bundle.status != "ready":
        return 2

    if args.command == "sync":
        return run_sync(bundle, args.sources, console)
    if args.command == "status":
        return run_status(bundle, console)
    return run_manifest(bundle, args.source, console)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
