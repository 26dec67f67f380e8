"""Tests for the sync engine."""

import io
import signal
import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest

from pynautica.exceptions import (
    CatalogUnavailableError,
    ExtractionCancelledError,
    NauticaNetworkError,
)
from pynautica.output import OutputFormatter
from pynautica.sync import ExtractionPipeline, SyncEngine, SyncRecord
from pynautica.sync.archive import ArchiveEntry
from pynautica.sync.encoding import Confidence
from pynautica.utils import utc_now

from .conftest import FakeCatalogClient, InMemoryStateStore, build_zip, make_item, utc


def archive_for(item_id):
    return build_zip([(b"chart.ksh", f"title={item_id}\n".encode())])


class InterruptingStream(io.RawIOBase):
    """Entry stream that sends SIGINT to the main thread halfway through.

    The second half is only returned once the engine has reacted to the
    signal by setting the cancel event.
    """

    def __init__(self, cancel_event):
        self.cancel_event = cancel_event
        self.chunks = [b"first-half-", b"second-half"]

    def readable(self):
        return True

    def read(self, size=-1):
        if not self.chunks:
            return b""
        if len(self.chunks) == 1:
            signal.pthread_kill(threading.main_thread().ident, signal.SIGINT)
            self.cancel_event.wait(5)
        return self.chunks.pop(0)


class StubHandle:
    """Archive handle serving prepared entries."""

    def __init__(self, entries):
        self._entries = entries
        self.rejected = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        pass

    def entries(self):
        return iter(self._entries)


class StubReader:
    """Archive reader that ignores the file and returns prepared entries."""

    def __init__(self, entries):
        self.entries = entries

    def open(self, path):
        return StubHandle(self.entries)


class ThreadRecordingStore(InMemoryStateStore):
    """Store fake remembering which thread committed each record."""

    def __init__(self):
        super().__init__()
        self.threads = []

    def put(self, item_id, record):
        self.threads.append(threading.current_thread())
        super().put(item_id, record)


class TestSyncEngine:
    """Test SyncEngine functionality."""

    @pytest.fixture
    def items(self):
        return [make_item("a"), make_item("b"), make_item("c")]

    @pytest.fixture
    def client(self, items):
        return FakeCatalogClient(
            items=items,
            archives={item.download_url: archive_for(item.id) for item in items},
        )

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def output(self):
        """Output formatter that prints nothing during tests."""
        return OutputFormatter(quiet=True)

    @pytest.fixture
    def make_engine(self, client, store, target_dir, output, sleeps):
        def factory(**kwargs):
            kwargs.setdefault("store", store)
            return SyncEngine(
                client,
                target_dir=target_dir,
                output=output,
                sleep=sleeps.append,
                **kwargs,
            )

        return factory

    def test_invalid_max_attempts(self, client, store, target_dir):
        with pytest.raises(ValueError):
            SyncEngine(client, store, target_dir, max_attempts=0)

    def test_full_pass(self, make_engine, store, target_dir):
        """Test that every new item is extracted and committed."""
        summary = make_engine().run()

        assert summary.ok
        assert summary.succeeded == ["a", "b", "c"]
        assert [i.id for i in summary.change_set.new] == ["a", "b", "c"]
        for item_id in ["a", "b", "c"]:
            chart = target_dir / item_id / "chart.ksh"
            assert chart.read_text() == f"title={item_id}\n"
            assert store.get(item_id).content_fingerprint.startswith("sha256:")

    def test_second_pass_is_empty(self, make_engine, client):
        """Test that a repeated pass downloads nothing."""
        make_engine().run()
        client.downloads.clear()

        summary = make_engine().run()

        assert summary.change_set.is_empty
        assert summary.change_set.unchanged_count == 3
        assert client.downloads == []

    def test_updated_item_is_fetched_again(self, make_engine, client, items, target_dir):
        make_engine().run()
        client.downloads.clear()

        updated = make_item("b", utc_now() + timedelta(days=1))
        client.items = [items[0], updated, items[2]]
        client.archives[updated.download_url] = build_zip([(b"chart.ksh", b"v2\n")])

        summary = make_engine().run()

        assert [i.id for i in summary.change_set.updated] == ["b"]
        assert summary.succeeded == ["b"]
        assert client.downloads == [updated.download_url]
        assert (target_dir / "b" / "chart.ksh").read_bytes() == b"v2\n"

    def test_dry_run_downloads_nothing(self, make_engine, client, store, target_dir):
        summary = make_engine().run(dry_run=True)

        assert summary.dry_run
        assert [i.id for i in summary.change_set.items] == ["a", "b", "c"]
        assert summary.succeeded == []
        assert client.downloads == []
        assert store.records == {}
        assert not (target_dir / "a").exists()

    def test_catalog_unavailable(self, make_engine, client, store):
        client.list_error = NauticaNetworkError("connection refused")

        with pytest.raises(CatalogUnavailableError, match="connection refused"):
            make_engine().run()
        assert client.downloads == []
        assert store.records == {}

    def test_download_retried_with_backoff(self, make_engine, client, items, sleeps, store):
        url = items[0].download_url
        client.archives[url] = [
            NauticaNetworkError("reset"),
            NauticaNetworkError("reset"),
            archive_for("a"),
        ]

        summary = make_engine().run()

        assert summary.succeeded == ["a", "b", "c"]
        assert client.downloads.count(url) == 3
        assert sleeps == [1.0, 2.0]
        assert store.get("a") is not None

    def test_download_gives_up_after_max_attempts(self, make_engine, client, items, sleeps, store):
        url = items[0].download_url
        client.archives[url] = [NauticaNetworkError("reset")] * 3

        summary = make_engine().run()

        assert not summary.ok
        assert summary.succeeded == ["b", "c"]
        (failed,) = summary.failed
        assert failed.item_id == "a"
        assert failed.kind == "download"
        assert failed.attempts == 3
        assert client.downloads.count(url) == 3
        assert sleeps == [1.0, 2.0]
        assert store.get("a") is None

    def test_corrupt_archive_not_retried(self, make_engine, client, items, store):
        url = items[1].download_url
        client.archives[url] = b"definitely not a zip"

        summary = make_engine().run()

        (failed,) = summary.failed
        assert failed.item_id == "b"
        assert failed.kind == "corrupt_archive"
        assert failed.attempts == 1
        assert client.downloads.count(url) == 1
        assert summary.succeeded == ["a", "c"]
        assert store.get("b") is None

    def test_failed_item_retried_next_pass(self, make_engine, client, items):
        client.archives[items[0].download_url] = [NauticaNetworkError("down")] * 3
        make_engine().run()

        client.archives[items[0].download_url] = archive_for("a")
        client.downloads.clear()
        summary = make_engine().run()

        assert summary.succeeded == ["a"]
        assert client.downloads == [items[0].download_url]

    def test_store_failure_retried_once(self, make_engine, sleeps):
        store = InMemoryStateStore(fail_puts=1)

        summary = make_engine(store=store).run()

        assert summary.ok
        assert store.put_calls == 4
        assert sleeps == [0.1]
        assert sorted(store.records) == ["a", "b", "c"]

    def test_store_failure_marks_item_failed(self, make_engine, client, target_dir):
        """Test that an extracted but uncommitted item is fetched again next pass."""
        failing = InMemoryStateStore(fail_puts=2)

        summary = make_engine(store=failing).run()

        (failed,) = summary.failed
        assert failed.item_id == "a"
        assert failed.kind == "store"
        assert "a" not in failing.records
        assert (target_dir / "a" / "chart.ksh").exists()

        client.downloads.clear()
        summary = make_engine(store=failing).run()
        assert summary.succeeded == ["a"]
        assert (target_dir / "a" / "chart.ksh").read_text() == "title=a\n"

    def test_parallel_workers_commit_on_calling_thread(self, client, target_dir, output):
        items = [make_item(f"pack-{i}") for i in range(6)]
        client.items = items
        client.archives = {item.download_url: archive_for(item.id) for item in items}
        store = ThreadRecordingStore()
        engine = SyncEngine(client, store, target_dir, output=output)

        summary = engine.run(max_workers=3)

        assert summary.ok
        assert sorted(summary.succeeded) == [item.id for item in items]
        assert len(store.records) == 6
        assert set(store.threads) == {threading.current_thread()}
        for item in items:
            assert (target_dir / item.id / "chart.ksh").exists()

    def test_parallel_failure_isolated(self, client, items, store, target_dir, output):
        client.archives[items[1].download_url] = b"garbage"
        engine = SyncEngine(client, store, target_dir, output=output)

        summary = engine.run(max_workers=2)

        assert sorted(summary.succeeded) == ["a", "c"]
        assert [f.item_id for f in summary.failed] == ["b"]

    def test_unexpected_error_recorded(self, client, store, target_dir, output):
        pipeline = Mock(spec=ExtractionPipeline)
        pipeline.process.side_effect = RuntimeError("boom")
        engine = SyncEngine(client, store, target_dir, output=output, pipeline=pipeline)

        summary = engine.run()

        assert [f.kind for f in summary.failed] == ["unexpected"] * 3
        assert store.records == {}

    def test_cancel_event_skips_items(self, make_engine, client, store):
        cancel_event = threading.Event()
        cancel_event.set()

        summary = make_engine().run(cancel_event=cancel_event)

        assert summary.cancelled
        assert not summary.ok
        assert summary.skipped == ["a", "b", "c"]
        assert summary.failed == []
        assert store.records == {}
        assert client.downloads == []

    def test_keyboard_interrupt_stops_pass(self, client, store, target_dir, output):
        record = SyncRecord("a", utc(2024, 1, 1), "sha256:a")

        def process(item, cancel_event=None):
            if item.id == "a":
                return record
            if item.id == "b":
                raise KeyboardInterrupt
            cancel_event.wait(5)
            raise ExtractionCancelledError("Cancelled after 0 entries", item.id)

        pipeline = Mock(spec=ExtractionPipeline)
        pipeline.process.side_effect = process
        engine = SyncEngine(client, store, target_dir, output=output, pipeline=pipeline)

        summary = engine.run()

        assert summary.cancelled
        assert summary.succeeded == ["a"]
        assert sorted(summary.skipped) == ["b", "c"]
        assert list(store.records) == ["a"]

    def test_single_worker_runs_off_calling_thread(self, client, store, target_dir, output):
        threads = []
        pipeline = Mock(spec=ExtractionPipeline)

        def process(item, cancel_event=None):
            threads.append(threading.current_thread())
            return SyncRecord(item.id, utc(2024, 1, 1), f"sha256:{item.id}")

        pipeline.process.side_effect = process
        engine = SyncEngine(client, store, target_dir, output=output, pipeline=pipeline)

        summary = engine.run(max_workers=1)

        assert summary.succeeded == ["a", "b", "c"]
        assert len(threads) == 3
        assert threading.current_thread() not in threads
        assert len(set(threads)) == 1

    @pytest.mark.skipif(
        not hasattr(signal, "pthread_kill"), reason="needs POSIX signals"
    )
    def test_ctrl_c_lets_current_entry_finish(self, client, store, target_dir, output):
        """Test that SIGINT during an entry write completes that entry only."""
        cancel_event = threading.Event()
        entries = [
            ArchiveEntry(
                raw_name_bytes=b"chart.ksh",
                decoded_name="chart.ksh",
                size=22,
                confidence=Confidence.HIGH,
                encoding="ascii",
                _opener=lambda: InterruptingStream(cancel_event),
            ),
            ArchiveEntry(
                raw_name_bytes=b"song.ogg",
                decoded_name="song.ogg",
                size=4,
                confidence=Confidence.HIGH,
                encoding="ascii",
                _opener=lambda: io.BytesIO(b"OggS"),
            ),
        ]
        client.items = [make_item("a")]
        pipeline = ExtractionPipeline(client, target_dir, reader=StubReader(entries))
        engine = SyncEngine(client, store, target_dir, output=output, pipeline=pipeline)

        summary = engine.run(max_workers=1, cancel_event=cancel_event)

        assert summary.cancelled
        assert summary.skipped == ["a"]
        assert store.records == {}
        chart = target_dir / "a" / "chart.ksh"
        assert chart.read_bytes() == b"first-half-second-half"
        assert not (target_dir / "a" / "song.ogg").exists()

    def test_summary_to_dict(self, make_engine, client, items):
        client.archives[items[2].download_url] = b"garbage"

        data = make_engine().run().to_dict()

        assert data["dry_run"] is False
        assert data["cancelled"] is False
        assert data["succeeded"] == ["a", "b"]
        assert data["failed"][0]["id"] == "c"
        assert data["failed"][0]["kind"] == "corrupt_archive"
        assert [i["id"] for i in data["plan"]["new"]] == ["a", "b", "c"]

    def test_interactive_output_does_not_fail(self, client, store, target_dir):
        engine = SyncEngine(client, store, target_dir, output=OutputFormatter())
        assert engine.run().ok
