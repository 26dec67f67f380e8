"""Incremental sync and extraction engine for pynautica."""

from .archive import ArchiveEntry, ArchiveHandle, ArchiveReader, normalize_entry_name
from .encoding import Confidence, DecodedName, EncodingDetector, detect_and_decode
from .engine import FailedItem, ItemOutcome, SyncEngine, SyncSummary
from .pipeline import ExtractionPipeline
from .planner import ChangeSet, ItemStatus, SyncPlanner
from .state import JsonStateStore, StateStore, SyncRecord

__all__ = [
    "SyncEngine",
    "SyncSummary",
    "ItemOutcome",
    "FailedItem",
    "SyncPlanner",
    "ChangeSet",
    "ItemStatus",
    "ExtractionPipeline",
    "ArchiveReader",
    "ArchiveHandle",
    "ArchiveEntry",
    "normalize_entry_name",
    "EncodingDetector",
    "Confidence",
    "DecodedName",
    "detect_and_decode",
    "StateStore",
    "JsonStateStore",
    "SyncRecord",
]
