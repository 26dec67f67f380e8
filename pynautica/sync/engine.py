"""Core sync engine that runs one sync pass."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from ..exceptions import (
    CatalogUnavailableError,
    DownloadError,
    ExtractError,
    ExtractionCancelledError,
    NauticaError,
    StoreError,
)
from ..models import CatalogItem
from ..output import OutputFormatter
from ..utils import DEFAULT_DOWNLOAD_TIMEOUT, DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_DELAY
from .pipeline import ExtractionPipeline
from .planner import ChangeSet, SyncPlanner
from .state import StateStore, SyncRecord

logger = logging.getLogger(__name__)


@dataclass
class ItemOutcome:
    """Result of processing one item (before commit)."""

    item: CatalogItem
    record: Optional[SyncRecord] = None
    error: Optional[Exception] = None
    attempts: int = 0


@dataclass
class FailedItem:
    """An item that could not be synced in this pass."""

    item_id: str
    kind: str
    message: str
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.item_id,
            "kind": self.kind,
            "message": self.message,
            "attempts": self.attempts,
        }


@dataclass
class SyncSummary:
    """Outcome of a sync pass."""

    change_set: ChangeSet
    dry_run: bool = False
    succeeded: list[str] = field(default_factory=list)
    failed: list[FailedItem] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    """Items not attempted because the pass was cancelled"""
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        """True when no item failed and the pass was not cancelled."""
        return not self.failed and not self.cancelled

    def to_dict(self) -> dict:
        """Convert summary to a JSON-serializable dictionary."""
        return {
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "plan": self.change_set.to_dict(),
            "succeeded": list(self.succeeded),
            "failed": [f.to_dict() for f in self.failed],
            "skipped": list(self.skipped),
            "unchanged": self.change_set.unchanged_count,
        }


class SyncEngine:
    """Orchestrates planning, extraction and state commits for a sync pass.

    Items are extracted by worker threads; sync records are committed only
    on the coordinating thread, one key at a time.
    """

    def __init__(
        self,
        client,
        store: StateStore,
        target_dir: Path,
        output: Optional[OutputFormatter] = None,
        pipeline: Optional[ExtractionPipeline] = None,
        planner: Optional[SyncPlanner] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        store_retry_delay: float = 0.1,
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize sync engine.

        Args:
            client: Catalog client with ``list_items()`` and ``download_file()``
            store: State store holding sync records
            target_dir: Directory items are extracted into
            output: Output formatter for displaying progress/status
            pipeline: Extraction pipeline (built from client and target_dir
                     if not provided)
            planner: Sync planner (defaults to SyncPlanner())
            max_attempts: Total attempts per item for download errors
            retry_delay: Initial backoff delay between download attempts (seconds)
            store_retry_delay: Delay before retrying a failed commit (seconds)
            timeout: Per-download timeout in seconds (ignored if pipeline given)
            sleep: Sleep function used for backoff
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.store = store
        self.target_dir = target_dir
        self.output = output or OutputFormatter()
        self.pipeline = pipeline or ExtractionPipeline(
            client, target_dir, timeout=timeout
        )
        self.planner = planner or SyncPlanner()
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.store_retry_delay = store_retry_delay
        self.sleep = sleep

    @property
    def _interactive(self) -> bool:
        return not self.output.quiet and not self.output.json_output

    # =========================
    # Planning
    # =========================

    def fetch_catalog(self) -> list[CatalogItem]:
        """List the remote catalog.

        Raises:
            CatalogUnavailableError: If the catalog client fails
        """
        start = time.time()
        try:
            if self._interactive:
                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    transient=True,
                ) as progress:
                    progress.add_task("Fetching catalog...", total=None)
                    items = self.client.list_items()
            else:
                items = self.client.list_items()
        except NauticaError as e:
            raise CatalogUnavailableError(f"Catalog unavailable: {e}") from e
        logger.debug(
            "Fetched %d catalog item(s) in %.2fs", len(items), time.time() - start
        )
        return items

    def plan(self) -> ChangeSet:
        """Fetch the catalog and compute the change set."""
        catalog = self.fetch_catalog()
        change_set = self.planner.plan(catalog, self.store)
        logger.debug(
            "Planned %d new, %d updated, %d unchanged item(s)",
            len(change_set.new),
            len(change_set.updated),
            change_set.unchanged_count,
        )
        return change_set

    # =========================
    # Pass execution
    # =========================

    def run(
        self,
        dry_run: bool = False,
        max_workers: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncSummary:
        """Run one sync pass.

        Args:
            dry_run: If True, only plan and report the change set
            max_workers: Number of items processed in parallel
            cancel_event: Pass-wide cancellation signal

        Returns:
            SyncSummary for the pass

        Raises:
            CatalogUnavailableError: If the catalog cannot be listed
        """
        if cancel_event is None:
            cancel_event = threading.Event()

        change_set = self.plan()
        summary = SyncSummary(change_set=change_set, dry_run=dry_run)
        self._display_plan(change_set, dry_run)

        items = change_set.items
        if dry_run or not items:
            if self._interactive:
                self._display_summary(summary)
            return summary

        if self._interactive:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
            ) as progress:
                task = progress.add_task("Syncing items...", total=len(items))
                self._execute(
                    items,
                    summary,
                    max_workers,
                    cancel_event,
                    on_done=lambda: progress.update(task, advance=1),
                )
        else:
            self._execute(items, summary, max_workers, cancel_event)

        if cancel_event.is_set():
            summary.cancelled = True

        self._display_summary(summary)
        return summary

    def _execute(
        self,
        items: list[CatalogItem],
        summary: SyncSummary,
        max_workers: int,
        cancel_event: threading.Event,
        on_done: Optional[Callable[[], None]] = None,
    ) -> None:
        """Process items on a thread pool; commit on this thread as they finish.

        A single worker still runs on its own thread, so Ctrl-C reaches this
        thread and only sets ``cancel_event``: in-flight items finish their
        current entry and stop before the next one.
        """
        max_workers = max(1, max_workers)
        logger.debug(f"Processing {len(items)} item(s) with {max_workers} worker(s)")

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {}
            finished = set()
            try:
                for item in items:
                    future = executor.submit(self._process_scheduled, item, cancel_event)
                    futures[future] = item
                for future in as_completed(futures):
                    finished.add(future)
                    self._finish(future.result(), summary)
                    if on_done:
                        on_done()
            except KeyboardInterrupt:
                # Queued items are skipped by _process_scheduled
                cancel_event.set()
                summary.cancelled = True
                if self._interactive:
                    self.output.warning("Sync cancelled, finishing in-flight items...")
                for future in as_completed(set(futures) - finished):
                    try:
                        outcome = future.result()
                    except KeyboardInterrupt:
                        continue
                    self._finish(outcome, summary)

        done = set(summary.succeeded) | set(summary.skipped)
        done |= {f.item_id for f in summary.failed}
        summary.skipped.extend(item.id for item in items if item.id not in done)

    def _process_scheduled(
        self, item: CatalogItem, cancel_event: threading.Event
    ) -> ItemOutcome:
        if cancel_event.is_set():
            return ItemOutcome(
                item=item,
                error=ExtractionCancelledError("Pass cancelled before start", item.id),
            )
        try:
            return self.process_item(item, cancel_event)
        except Exception as e:
            logger.exception(f"Unexpected error while processing {item.id}")
            return ItemOutcome(item=item, error=e, attempts=1)

    def process_item(
        self,
        item: CatalogItem,
        cancel_event: Optional[threading.Event] = None,
        attempt: int = 1,
    ) -> ItemOutcome:
        """Process one item, retrying download errors with backoff.

        Corrupt archives and write errors are not retried within a pass.

        Args:
            item: Catalog item
            cancel_event: Pass-wide cancellation signal
            attempt: Number of the first attempt (1-based)

        Returns:
            ItemOutcome with either a record or the final error
        """
        while True:
            start = time.time()
            try:
                record = self.pipeline.process(item, cancel_event)
                logger.debug(
                    f"Processed {item.id} in {time.time() - start:.2f}s "
                    f"(attempt {attempt})"
                )
                return ItemOutcome(item=item, record=record, attempts=attempt)
            except DownloadError as e:
                cancelled = cancel_event is not None and cancel_event.is_set()
                if attempt >= self.max_attempts or cancelled:
                    return ItemOutcome(item=item, error=e, attempts=attempt)
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.debug(
                    f"Download of {item.id} failed "
                    f"(attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                self.sleep(delay)
                attempt += 1
            except ExtractError as e:
                return ItemOutcome(item=item, error=e, attempts=attempt)

    def commit(self, record: SyncRecord) -> None:
        """Persist a sync record, retrying once on a store failure.

        Raises:
            StoreError: If the second attempt fails as well
        """
        try:
            self.store.put(record.item_id, record)
        except StoreError as e:
            logger.debug(f"Commit of {record.item_id} failed, retrying once: {e}")
            self.sleep(self.store_retry_delay)
            self.store.put(record.item_id, record)

    def _finish(self, outcome: ItemOutcome, summary: SyncSummary) -> None:
        """Commit a successful outcome and record the result."""
        item = outcome.item
        if outcome.record is not None:
            try:
                self.commit(outcome.record)
            except StoreError as e:
                self._record_failure(summary, item, e, outcome.attempts)
                return
            summary.succeeded.append(item.id)
            logger.info(f"Synced {item.id} ({item.display_name})")
            return

        if isinstance(outcome.error, ExtractionCancelledError):
            summary.skipped.append(item.id)
            return

        self._record_failure(summary, item, outcome.error, outcome.attempts)

    def _record_failure(
        self,
        summary: SyncSummary,
        item: CatalogItem,
        error: Optional[Exception],
        attempts: int,
    ) -> None:
        kind = getattr(error, "kind", "unexpected")
        summary.failed.append(
            FailedItem(
                item_id=item.id, kind=kind, message=str(error), attempts=attempts
            )
        )
        logger.warning(f"Failed to sync {item.id} [{kind}]: {error}")
        if self._interactive:
            self.output.error(f"{item.display_name} ({item.id}): {error}")

    # =========================
    # Display
    # =========================

    def _display_plan(self, change_set: ChangeSet, dry_run: bool) -> None:
        if not self._interactive:
            return

        self.output.info("Sync plan:")
        if change_set.new:
            self.output.info(f"  + New: {len(change_set.new)} item(s)")
        if change_set.updated:
            self.output.info(f"  ↻ Updated: {len(change_set.updated)} item(s)")
        if change_set.unchanged_count:
            self.output.info(f"  = Unchanged: {change_set.unchanged_count} item(s)")

        if dry_run:
            for item in change_set.new:
                self.output.info(f"  new      {item.id}  {item.display_name}")
            for item in change_set.updated:
                self.output.info(f"  updated  {item.id}  {item.display_name}")
        self.output.print("")

    def _display_summary(self, summary: SyncSummary) -> None:
        if not self._interactive:
            return

        self.output.print("")
        if summary.dry_run:
            self.output.success("Dry run complete!")
        elif summary.change_set.is_empty:
            self.output.success("No changes needed - everything is in sync!")
            return
        else:
            self.output.success("Sync complete!")

        if summary.succeeded:
            self.output.info(f"  Synced: {len(summary.succeeded)}")
        if summary.skipped:
            self.output.info(f"  Skipped: {len(summary.skipped)}")
        if summary.failed:
            self.output.warning(f"Failed: {len(summary.failed)} item(s)")
            for failed in summary.failed:
                self.output.warning(f"  {failed.item_id}: {failed.kind}")
