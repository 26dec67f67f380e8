"""ZIP archive reading with encoding-safe entry names."""

import io
import logging
import re
import struct
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, BinaryIO, Callable, Iterator, Optional

from ..exceptions import CorruptArchiveError, EntryRejectedError
from .encoding import Confidence, EncodingDetector

logger = logging.getLogger(__name__)

# General purpose flag bit 11: file name is stored as UTF-8
ZIP_UTF8_FLAG = 0x800

_EOCD_SIGNATURE = b"PK\x05\x06"
_CENTRAL_SIGNATURE = b"PK\x01\x02"
_LOCAL_SIGNATURE = b"PK\x03\x04"
_EOCD = struct.Struct("<4s4H2LH")
_CENTRAL_HEADER = struct.Struct("<4s6H3L5H2L")
# Signature, version needed, general purpose flags
_LOCAL_HEADER_FLAGS_END = 8

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


@dataclass
class ArchiveEntry:
    """One entry of an archive, with its recovered name.

    Only valid while the owning ArchiveHandle is open.
    """

    raw_name_bytes: bytes
    """Name exactly as stored in the archive"""

    decoded_name: str
    """Normalized relative path, segments joined with '/'"""

    size: int
    """Uncompressed size in bytes"""

    confidence: Confidence
    encoding: str
    is_dir: bool = False
    _opener: Optional[Callable[[], IO[bytes]]] = field(
        default=None, repr=False, compare=False
    )

    def open(self) -> IO[bytes]:
        """Open the entry content as a readable binary stream."""
        if self._opener is None:
            raise ValueError(f"Entry {self.decoded_name!r} has no content stream")
        return self._opener()


def normalize_entry_name(name: str, is_dir: bool = False) -> str:
    """Normalize a decoded entry name into a safe relative path.

    Backslashes are treated as separators. Every segment must be a plain
    name: ``.``, ``..``, empty segments, drive letters and absolute roots are
    rejected rather than rewritten.

    Args:
        name: Decoded entry name
        is_dir: Whether the entry is a directory (one trailing separator allowed)

    Returns:
        Relative path with '/' separators

    Raises:
        EntryRejectedError: If the name is empty or unsafe

    Examples:
        >>> normalize_entry_name("songs\\\\chart.ksh")
        'songs/chart.ksh'
        >>> normalize_entry_name("../../etc/passwd")
        Traceback (most recent call last):
        ...
        pynautica.exceptions.EntryRejectedError: Unsafe path segment '..' in '../../etc/passwd'
    """
    if "\0" in name:
        raise EntryRejectedError(f"NUL byte in entry name {name!r}")

    path = name.replace("\\", "/")
    if is_dir and path.endswith("/"):
        path = path[:-1]
    if not path:
        raise EntryRejectedError("Empty entry name")
    if _DRIVE_RE.match(path):
        raise EntryRejectedError(f"Drive-qualified entry name {name!r}")

    segments = path.split("/")
    for segment in segments:
        if segment in ("", ".", ".."):
            raise EntryRejectedError(
                f"Unsafe path segment {segment!r} in {name!r}"
            )
    return "/".join(segments)


def raw_entry_name(info: zipfile.ZipInfo) -> bytes:
    """Recover the name bytes exactly as stored in the archive.

    zipfile decodes names as UTF-8 when the flag is set and as cp437
    otherwise; cp437 maps every byte, so re-encoding is lossless.
    """
    if info.flag_bits & ZIP_UTF8_FLAG:
        return info.orig_filename.encode("utf-8")
    return info.orig_filename.encode("cp437")


class ArchiveHandle:
    """An opened archive whose entries can be read in a single forward pass."""

    def __init__(
        self,
        path: Path,
        zip_file: zipfile.ZipFile,
        detector: EncodingDetector,
        source: Optional[IO[bytes]] = None,
    ):
        self.path = path
        self._zip = zip_file
        self._source = source
        self._detector = detector
        self._consumed = False
        self.rejected: list[EntryRejectedError] = []
        """Entries skipped because their names were unsafe"""

    def __enter__(self) -> "ArchiveHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying archive file."""
        self._zip.close()
        if self._source is not None:
            self._source.close()

    def __len__(self) -> int:
        return len(self._zip.infolist())

    def entries(self) -> Iterator[ArchiveEntry]:
        """Yield the archive entries lazily, in stored order.

        Entries with unsafe names are logged, recorded in ``rejected`` and
        skipped. The sequence cannot be restarted; re-open the archive for a
        second pass.

        Raises:
            RuntimeError: If called a second time on the same handle
        """
        if self._consumed:
            raise RuntimeError(
                f"Entries of {self.path} were already iterated; re-open the archive"
            )
        self._consumed = True

        for info in self._zip.infolist():
            entry = self._build_entry(info)
            if entry is not None:
                yield entry

    def _decode_name(self, info: zipfile.ZipInfo, raw: bytes) -> tuple[str, Confidence, str]:
        # Trust the UTF-8 flag only when the bytes really are UTF-8
        if info.flag_bits & ZIP_UTF8_FLAG:
            try:
                return raw.decode("utf-8"), Confidence.HIGH, "utf-8"
            except UnicodeDecodeError:
                pass
        return self._detector.detect_and_decode(raw)

    def _build_entry(self, info: zipfile.ZipInfo) -> Optional[ArchiveEntry]:
        raw = raw_entry_name(info)
        text, confidence, encoding = self._decode_name(info, raw)
        is_dir = text.replace("\\", "/").endswith("/")

        try:
            decoded_name = normalize_entry_name(text, is_dir=is_dir)
        except EntryRejectedError as e:
            e.raw_name = raw
            self.rejected.append(e)
            logger.warning(f"Skipping entry in {self.path.name}: {e}")
            return None

        if confidence == Confidence.FALLBACK:
            logger.warning(
                f"Could not determine encoding of entry name {raw!r}, "
                f"using {decoded_name!r}"
            )
        elif confidence == Confidence.LOW:
            logger.debug(f"Low confidence decode of {raw!r} as {encoding}")

        return ArchiveEntry(
            raw_name_bytes=raw,
            decoded_name=decoded_name,
            size=0 if is_dir else info.file_size,
            confidence=confidence,
            encoding=encoding,
            is_dir=is_dir,
            _opener=None if is_dir else (lambda: self._zip.open(info)),
        )


class _FlagClearedFile(io.RawIOBase):
    """Read-only view of an archive file with some bytes overridden.

    Used to clear the UTF-8 flag of entries whose names are not UTF-8, so
    zipfile reads those names as cp437 and the raw bytes stay recoverable.
    """

    def __init__(self, raw: BinaryIO, patches: dict[int, int]):
        self._raw = raw
        self._patches = patches

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        return self._raw.seek(offset, whence)

    def tell(self) -> int:
        return self._raw.tell()

    def readinto(self, buffer) -> int:
        start = self._raw.tell()
        data = self._raw.read(len(buffer))
        count = len(data)
        buffer[:count] = data
        for position, value in self._patches.items():
            if start <= position < start + count:
                buffer[position - start] = value
        return count

    def close(self) -> None:
        if not self.closed:
            self._raw.close()
        super().close()


def find_invalid_utf8_flags(fp: BinaryIO) -> dict[int, int]:
    """Locate UTF-8 flags set on names that are not valid UTF-8.

    Walks the central directory and returns byte patches (file offset to new
    byte value) that clear bit 11 in both the central and the local header of
    each such entry. Returns an empty dict when there is nothing to clear or
    the directory cannot be walked (ZIP64, truncated records).
    """
    fp.seek(0, io.SEEK_END)
    file_size = fp.tell()
    tail_start = max(0, file_size - _EOCD.size - 0xFFFF)
    fp.seek(tail_start)
    tail = fp.read()
    eocd_at = tail.rfind(_EOCD_SIGNATURE)
    if eocd_at < 0 or len(tail) - eocd_at < _EOCD.size:
        return {}
    eocd = _EOCD.unpack(tail[eocd_at : eocd_at + _EOCD.size])
    cd_size, cd_offset = eocd[5], eocd[6]
    if cd_offset == 0xFFFFFFFF or cd_size == 0xFFFFFFFF:
        return {}

    cd_start = tail_start + eocd_at - cd_size
    if cd_start < 0:
        return {}
    # Bytes prepended to the archive (self-extractor stubs) shift every offset
    concat = cd_start - cd_offset
    fp.seek(cd_start)
    directory = fp.read(cd_size)

    patches: dict[int, int] = {}
    pos = 0
    while pos + _CENTRAL_HEADER.size <= len(directory):
        header = _CENTRAL_HEADER.unpack(directory[pos : pos + _CENTRAL_HEADER.size])
        if header[0] != _CENTRAL_SIGNATURE:
            break
        flags, name_len, extra_len, comment_len, local_offset = (
            header[3],
            header[10],
            header[11],
            header[12],
            header[16],
        )
        name_start = pos + _CENTRAL_HEADER.size
        name = directory[name_start : name_start + name_len]
        if flags & ZIP_UTF8_FLAG:
            try:
                name.decode("utf-8")
            except UnicodeDecodeError:
                high_byte = (flags >> 8) & ~(ZIP_UTF8_FLAG >> 8)
                patches[cd_start + pos + 9] = high_byte
                local_at = local_offset + concat
                fp.seek(local_at)
                local = fp.read(_LOCAL_HEADER_FLAGS_END)
                if local[:4] == _LOCAL_SIGNATURE and len(local) == _LOCAL_HEADER_FLAGS_END:
                    patches[local_at + 7] = local[7] & ~(ZIP_UTF8_FLAG >> 8)
        pos = name_start + name_len + extra_len + comment_len
    return patches


class ArchiveReader:
    """Opens ZIP archives and resolves entry names via an EncodingDetector."""

    def __init__(self, detector: Optional[EncodingDetector] = None):
        """Initialize archive reader.

        Args:
            detector: Encoding detector for names without a trustworthy
                     UTF-8 flag (defaults to EncodingDetector())
        """
        self.detector = detector or EncodingDetector()

    def open(self, path: Path) -> ArchiveHandle:
        """Open an archive and parse its central directory.

        Entries whose UTF-8 flag is set on bytes that are not UTF-8 are read
        as if the flag were clear, so their names go through the detector
        instead of failing the whole archive.

        Args:
            path: Path to the archive file

        Returns:
            ArchiveHandle (use as a context manager)

        Raises:
            CorruptArchiveError: If the archive index cannot be parsed
        """
        try:
            zip_file = zipfile.ZipFile(path)
        except UnicodeDecodeError as e:
            return self._open_ignoring_bad_flags(path, e)
        except (zipfile.BadZipFile, EOFError, ValueError) as e:
            raise CorruptArchiveError(f"Cannot read archive {path.name}: {e}") from e
        return ArchiveHandle(path, zip_file, self.detector)

    def _open_ignoring_bad_flags(
        self, path: Path, cause: UnicodeDecodeError
    ) -> ArchiveHandle:
        try:
            raw = open(path, "rb")
        except OSError as e:
            raise CorruptArchiveError(f"Cannot read archive {path.name}: {e}") from e

        try:
            patches = find_invalid_utf8_flags(raw)
            if not patches:
                raise CorruptArchiveError(f"Cannot read archive {path.name}: {cause}")
            source = _FlagClearedFile(raw, patches)
            zip_file = zipfile.ZipFile(source)
        except CorruptArchiveError:
            raw.close()
            raise
        except (zipfile.BadZipFile, UnicodeDecodeError, EOFError, ValueError, OSError) as e:
            raw.close()
            raise CorruptArchiveError(f"Cannot read archive {path.name}: {e}") from e

        logger.warning(
            f"Ignoring UTF-8 flag on non-UTF-8 entry names in {path.name}"
        )
        return ArchiveHandle(path, zip_file, self.detector, source=source)
