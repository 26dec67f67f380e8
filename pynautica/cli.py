"""CLI interface for pynautica."""

import logging
import threading
from pathlib import Path
from typing import Any, Optional

import click

from . import __version__
from .api import NauticaClient
from .config import ENV_BASE_URL, config
from .exceptions import (
    CatalogUnavailableError,
    NauticaAPIError,
    NauticaConfigError,
    StoreError,
)
from .output import OutputFormatter
from .sync import JsonStateStore, SyncEngine
from .utils import DEFAULT_MAX_ATTEMPTS, format_timestamp

logger = logging.getLogger(__name__)


def _open_store(ctx: Any, out: OutputFormatter, dest: Path) -> JsonStateStore:
    """Open the state store of a target directory or exit with an error."""
    try:
        return JsonStateStore.for_target(dest)
    except StoreError as e:
        out.error(str(e))
        ctx.exit(1)
        raise  # Unreachable, but helps type checker


@click.group()
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: Any, quiet: bool, json: bool, verbose: bool) -> None:
    """pynautica - Download and keep in sync charts from Nautica (ksm.dev)."""
    ctx.ensure_object(dict)
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pynautica").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.option(
    "--base-url",
    "-u",
    prompt="Nautica server URL",
    default=lambda: config.base_url,
    help="Base URL of the Nautica server",
)
@click.pass_context
def init(ctx: Any, base_url: str) -> None:
    """Store the Nautica server URL in ~/.config/pynautica/config."""
    out: OutputFormatter = ctx.obj["out"]
    base_url = base_url.rstrip("/")

    out.info("Checking server...")
    try:
        with NauticaClient(base_url=base_url, max_retries=0) as client:
            page = client.get_catalog_page()
    except NauticaAPIError as e:
        out.error(f"Server check failed: {e}")
        ctx.exit(1)
        return

    config.save_value(ENV_BASE_URL, base_url)
    out.success(f"Saved server URL to {config.get_config_path()}")
    out.info(f"First catalog page lists {len(page.items)} item(s)")


@main.command()
@click.argument(
    "dest",
    type=click.Path(file_okay=False, path_type=Path),
    required=False,
)
@click.option(
    "--workers",
    "-w",
    type=int,
    default=None,
    help="Number of items downloaded in parallel (default: 1)",
)
@click.option(
    "--dry-run", is_flag=True, help="Show what would be synced without downloading"
)
@click.option(
    "--timeout",
    "-t",
    type=float,
    default=None,
    help="Per-download timeout in seconds (default: 60)",
)
@click.option("--base-url", "-u", default=None, help="Base URL of the Nautica server")
@click.option(
    "--retries",
    type=int,
    default=DEFAULT_MAX_ATTEMPTS,
    show_default=True,
    help="Download attempts per item before giving up for this run",
)
@click.option("--no-progress", is_flag=True, help="Disable progress bars")
@click.pass_context
def sync(
    ctx: Any,
    dest: Optional[Path],
    workers: Optional[int],
    dry_run: bool,
    timeout: Optional[float],
    base_url: Optional[str],
    retries: int,
    no_progress: bool,
) -> None:
    """Download new and updated charts into DEST.

    DEST defaults to ./nautica and is created if it does not exist. Each
    chart is extracted into DEST/<chart id>/; sync state is kept in
    DEST/meta.json so repeated runs only fetch what changed.

    Examples:
        pynautica sync ./songs
        pynautica sync ./songs --dry-run     # Preview new/updated charts
        pynautica sync ./songs -w 4          # Four parallel downloads
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        dest = dest or config.dest
        workers = workers if workers is not None else config.workers
        timeout = timeout if timeout is not None else config.download_timeout
    except NauticaConfigError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    if workers < 1:
        out.error("Workers must be at least 1")
        ctx.exit(1)
    if timeout <= 0:
        out.error("Timeout must be positive")
        ctx.exit(1)
    if retries < 1:
        out.error("Retries must be at least 1")
        ctx.exit(1)

    if dest.exists() and not dest.is_dir():
        out.error(f"Path is not a directory: {dest}")
        ctx.exit(1)
    if not dry_run:
        dest.mkdir(parents=True, exist_ok=True)

    store = _open_store(ctx, out, dest)
    client = NauticaClient(base_url=base_url)

    if not out.quiet:
        out.info(f"Server: {client.base_url}")
        out.info(f"Destination: {dest}")
        if dry_run:
            out.info("Dry run: No changes will be made")
        out.info("")

    engine_out = OutputFormatter(
        json_output=out.json_output, quiet=no_progress or out.quiet
    )
    engine = SyncEngine(
        client,
        store,
        dest,
        output=engine_out,
        max_attempts=retries,
        timeout=timeout,
    )
    cancel_event = threading.Event()

    try:
        summary = engine.run(
            dry_run=dry_run, max_workers=workers, cancel_event=cancel_event
        )
    except KeyboardInterrupt:
        out.warning("Sync cancelled by user")
        ctx.exit(130)
        return
    except CatalogUnavailableError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    finally:
        client.close()

    if out.json_output:
        out.output_json(summary.to_dict())
    elif summary.failed and not out.quiet:
        out.warning(
            f"{len(summary.failed)} item(s) failed and will be retried on the next run"
        )

    if summary.cancelled:
        ctx.exit(130)
    if summary.failed:
        ctx.exit(1)


@main.command()
@click.argument(
    "dest",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=False,
)
@click.pass_context
def status(ctx: Any, dest: Optional[Path]) -> None:
    """List charts recorded as synced in DEST."""
    out: OutputFormatter = ctx.obj["out"]
    dest = dest or config.dest
    store = _open_store(ctx, out, dest)

    records = list(store.iterate())
    if out.json_output:
        out.output_json(
            {item_id: record.to_dict() for item_id, record in records}
        )
        return

    if not records:
        out.info(f"No synced charts in {dest}")
        return

    for item_id, record in records:
        fingerprint = record.content_fingerprint or "-"
        out.info(f"{item_id}  {format_timestamp(record.last_synced_at)}  {fingerprint}")
    out.info(f"\n{len(records)} chart(s) synced")


@main.command()
@click.argument(
    "dest",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.argument("item_ids", nargs=-1, required=True)
@click.pass_context
def forget(ctx: Any, dest: Path, item_ids: tuple[str, ...]) -> None:
    """Drop sync records so the next sync downloads ITEM_IDS again.

    Extracted files are left in place and overwritten by the next sync.
    """
    out: OutputFormatter = ctx.obj["out"]
    store = _open_store(ctx, out, dest)

    missing = 0
    for item_id in item_ids:
        try:
            removed = store.delete(item_id)
        except StoreError as e:
            out.error(str(e))
            ctx.exit(1)
            return
        if removed:
            out.success(f"Forgot {item_id}")
        else:
            missing += 1
            out.warning(f"No sync record for {item_id}")

    if missing:
        ctx.exit(1)
