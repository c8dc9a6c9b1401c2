"""Maps engine-native segments to the external transcript representation.

Offsets are code point indices into ``TranscriptionResult.text``: for every
segment, ``text[seg.text_start:seg.text_end] == seg.text``.
"""

import codecs
from collections.abc import Iterable
from dataclasses import dataclass, field

from whisper_api.engine.protocol import RawSegment


@dataclass(frozen=True)
class Segment:
    """A contiguous span of the transcript aligned to a time range."""

    id: int
    start_ms: int
    end_ms: int
    text_start: int
    text_end: int
    text: str


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    segments: list[Segment] = field(default_factory=list)


def map_segments(raw_segments: Iterable[RawSegment]) -> TranscriptionResult:
    """Build a TranscriptionResult with monotonic times and text offsets.

    Segments are stable-sorted by start time before concatenation, so text
    order and time order always agree. Negative timestamps are clamped to 0
    and an end before its start is raised to the start.

    Byte-valued segment text goes through one incremental UTF-8 decoder for
    the whole transcript: an incomplete multi-byte sequence at the end of a
    segment is carried into the next byte segment instead of being split. Bytes
    still pending before a str segment, or after the last segment, are decoded
    with replacement and stay in the segment they came from.
    """
    ordered = sorted(raw_segments, key=lambda seg: max(0, seg.start_ms))
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    pieces: list[str] = []
    segments: list[Segment] = []
    cursor = 0

    for index, raw in enumerate(ordered):
        if isinstance(raw.text, bytes):
            final = index == len(ordered) - 1
            piece = decoder.decode(raw.text, final=final)
        else:
            # Bytes still pending belong before this text, in the previous segment
            cursor += _extend_last(segments, pieces, decoder.decode(b"", final=True))
            piece = raw.text

        start_ms = max(0, int(raw.start_ms))
        end_ms = max(start_ms, int(raw.end_ms))
        segments.append(
            Segment(
                id=index,
                start_ms=start_ms,
                end_ms=end_ms,
                text_start=cursor,
                text_end=cursor + len(piece),
                text=piece,
            )
        )
        pieces.append(piece)
        cursor += len(piece)

    return TranscriptionResult(text="".join(pieces), segments=segments)


def _extend_last(segments: list[Segment], pieces: list[str], tail: str) -> int:
    """Append ``tail`` to the last segment; return the number of code points added."""
    if not tail or not segments:
        return 0
    last = segments[-1]
    segments[-1] = Segment(
        id=last.id,
        start_ms=last.start_ms,
        end_ms=last.end_ms,
        text_start=last.text_start,
        text_end=last.text_end + len(tail),
        text=last.text + tail,
    )
    pieces.append(tail)
    return len(tail)
