"""Filename encoding detection for archive entries.

ZIP archives built on Japanese or Chinese Windows systems commonly store
entry names in the system code page without setting the UTF-8 flag. The
detector guesses the most probable encoding of such raw names and always
produces some text: an unreadable name must never stop an extraction.
"""

import codecs
import logging
from enum import Enum
from typing import NamedTuple, Optional, Sequence

from charset_normalizer import from_bytes

logger = logging.getLogger(__name__)

# Dominant encoding first, then regional fallbacks. No single-byte code
# pages: they decode any byte string, so nothing would reach FALLBACK.
DEFAULT_CANDIDATES: tuple[str, ...] = ("cp932", "gbk", "big5")

# Mess ratio (0.0 = clean) at or below which a guess counts as HIGH
HIGH_CONFIDENCE_CHAOS: float = 0.05

# Mess ratio above which charset_normalizer discards a candidate
MAX_CHAOS: float = 0.2

# Candidates scoring within this band of the best are ordered by preference
CHAOS_TIE_BAND: float = 0.1


class Confidence(str, Enum):
    """How trustworthy a decoded name is."""

    HIGH = "high"
    """Unambiguous decode (ASCII, valid UTF-8, or a clean statistical match)"""

    LOW = "low"
    """A candidate decoded strictly but the statistical model is unsure"""

    FALLBACK = "fallback"
    """No candidate decoded; replacement characters were substituted"""


class DecodedName(NamedTuple):
    """Result of decoding a raw entry name."""

    text: str
    confidence: Confidence
    encoding: str


def _canonical(encoding: str) -> str:
    """Return the codec's canonical Python name (e.g. 'Shift-JIS' -> 'shift_jis')."""
    try:
        return codecs.lookup(encoding).name
    except LookupError:
        return encoding.lower()


class EncodingDetector:
    """Guesses the source encoding of raw archive entry names.

    Examples:
        >>> detector = EncodingDetector()
        >>> detector.detect_and_decode(b"chart.ksh")
        DecodedName(text='chart.ksh', confidence=<Confidence.HIGH: 'high'>, encoding='ascii')
    """

    def __init__(
        self,
        candidates: Optional[Sequence[str]] = None,
        high_confidence_chaos: float = HIGH_CONFIDENCE_CHAOS,
        max_chaos: float = MAX_CHAOS,
    ):
        """Initialize encoding detector.

        Args:
            candidates: Ordered candidate encodings, dominant first
                       (defaults to cp932, gbk, big5)
            high_confidence_chaos: Mess ratio at or below which a statistical
                                   match is reported as HIGH
            max_chaos: Mess ratio above which a candidate is rejected
        """
        if candidates is None:
            candidates = DEFAULT_CANDIDATES
        if not candidates:
            raise ValueError("At least one candidate encoding is required")
        self.candidates = [_canonical(c) for c in candidates]
        self.high_confidence_chaos = high_confidence_chaos
        self.max_chaos = max_chaos

    def detect_and_decode(self, raw: bytes) -> DecodedName:
        """Decode raw name bytes with the most probable encoding.

        Never raises: when nothing decodes cleanly, the dominant candidate is
        applied with replacement characters and FALLBACK is reported.

        Args:
            raw: Name bytes as stored in the archive

        Returns:
            DecodedName with the text, confidence and encoding used
        """
        if raw.isascii():
            return DecodedName(raw.decode("ascii"), Confidence.HIGH, "ascii")

        try:
            return DecodedName(raw.decode("utf-8"), Confidence.HIGH, "utf-8")
        except UnicodeDecodeError:
            pass

        guess = self._statistical_guess(raw)
        if guess is not None:
            return guess

        for encoding in self.candidates:
            try:
                text = raw.decode(encoding)
            except UnicodeDecodeError:
                continue
            logger.debug(f"No statistical match for {raw!r}, using {encoding}")
            return DecodedName(text, Confidence.LOW, encoding)

        dominant = self.candidates[0]
        text = raw.decode(dominant, errors="replace")
        logger.debug(f"No candidate decodes {raw!r}, falling back to lossy {dominant}")
        return DecodedName(text, Confidence.FALLBACK, dominant)

    def _statistical_guess(self, raw: bytes) -> Optional[DecodedName]:
        """Score the candidates with charset_normalizer's mess detector."""
        matches = from_bytes(
            raw,
            cp_isolation=list(self.candidates),
            threshold=self.max_chaos,
            enable_fallback=False,
        )

        # (chaos, preference, encoding, text)
        scored: list[tuple[float, int, str, str]] = []
        for match in matches:
            encoding = _canonical(match.encoding)
            if encoding not in self.candidates:
                continue
            try:
                text = raw.decode(encoding)
            except UnicodeDecodeError:
                continue
            scored.append(
                (match.chaos, self.candidates.index(encoding), encoding, text)
            )

        if not scored:
            return None

        best_chaos = min(s[0] for s in scored)
        contenders = [s for s in scored if s[0] <= best_chaos + CHAOS_TIE_BAND]
        chaos, _, encoding, text = min(contenders, key=lambda s: s[1])

        round_trips = text.encode(encoding) == raw
        if chaos <= self.high_confidence_chaos and round_trips:
            confidence = Confidence.HIGH
        else:
            confidence = Confidence.LOW
        logger.debug(
            "Decoded %r as %s (chaos=%.3f, %s)", raw, encoding, chaos, confidence.value
        )
        return DecodedName(text, confidence, encoding)


_default_detector = EncodingDetector()


def detect_and_decode(raw: bytes) -> DecodedName:
    """Decode raw name bytes using the default detector."""
    return _default_detector.detect_and_decode(raw)
