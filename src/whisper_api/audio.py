"""Audio decoding: arbitrary upload bytes to the engine's sample format.

The engine wants 16kHz mono float32 samples in [-1, 1]. WAV/PCM16 input is
parsed directly; anything else goes through the transcoder first.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from whisper_api.constants import (
    BYTES_PER_SAMPLE,
    PCM16_SCALE,
    SAMPLE_RATE,
    WAVE_FORMAT_EXTENSIBLE,
    WAVE_FORMAT_PCM,
)
from whisper_api.errors import EmptyAudio, InvalidFormat

logger = logging.getLogger("whisper_api.audio")


class Transcoder(Protocol):
    """Converts arbitrary audio container bytes to PCM16 WAV bytes."""

    def to_wav(self, data: bytes) -> bytes: ...


@dataclass(frozen=True)
class AudioBuffer:
    """PCM16 payload of a WAV file plus the header fields describing it."""

    data: bytes
    channels: int
    sample_rate: int
    bits_per_sample: int

    @property
    def frames(self) -> int:
        return len(self.data) // (self.channels * BYTES_PER_SAMPLE)

    @property
    def duration_s(self) -> float:
        return self.frames / self.sample_rate


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Convert PCM16 bytes to float32 array normalized to [-1, 1].

    Args:
        data: Raw PCM16 little-endian audio bytes.

    Returns:
        Float32 numpy array with values in [-1, 1].
    """
    audio = np.frombuffer(data, dtype="<i2").astype(np.float32)
    audio /= PCM16_SCALE
    return audio


def float32_to_pcm16(audio: np.ndarray) -> bytes:
    """Convert float32 array [-1, 1] to PCM16 bytes.

    Args:
        audio: Float32 numpy array with values in [-1, 1].

    Returns:
        Raw PCM16 little-endian audio bytes.
    """
    clipped = np.clip(audio, -1.0, 1.0)
    pcm = (clipped * 32767.0).astype("<i2")
    return pcm.tobytes()


def is_wav(data: bytes) -> bool:
    """Check the RIFF/WAVE magic bytes."""
    return len(data) >= 12 and data[0:4] == b"RIFF" and data[8:12] == b"WAVE"


def parse_wav(data: bytes) -> AudioBuffer:
    """Parse a RIFF/WAVE container holding 16-bit linear PCM.

    Walks the chunk list instead of assuming a 44 byte header, so files with
    LIST/fact chunks or an extensible fmt chunk parse correctly.

    Args:
        data: Complete WAV file bytes.

    Returns:
        AudioBuffer with the raw data chunk and header fields.

    Raises:
        InvalidFormat: On a malformed header or anything other than PCM16.
    """
    if not is_wav(data):
        raise InvalidFormat("Missing RIFF/WAVE header")

    fmt: tuple[int, int, int, int] | None = None
    offset = 12
    while offset + 8 <= len(data):
        chunk_id = data[offset : offset + 4]
        (chunk_size,) = struct.unpack_from("<I", data, offset + 4)
        body_start = offset + 8

        if chunk_id == b"fmt ":
            if chunk_size < 16 or body_start + 16 > len(data):
                raise InvalidFormat("Truncated fmt chunk")
            format_tag, channels, sample_rate, _, _, bits = struct.unpack_from(
                "<HHIIHH", data, body_start
            )
            if format_tag == WAVE_FORMAT_EXTENSIBLE:
                # cbSize(2) validBits(2) channelMask(4), then the sub-format GUID
                # whose first two bytes repeat the real format tag
                if chunk_size < 40 or body_start + 26 > len(data):
                    raise InvalidFormat("Truncated extensible fmt chunk")
                (format_tag,) = struct.unpack_from("<H", data, body_start + 24)
            fmt = (format_tag, channels, sample_rate, bits)

        elif chunk_id == b"data":
            if fmt is None:
                raise InvalidFormat("data chunk precedes fmt chunk")
            format_tag, channels, sample_rate, bits = fmt
            if format_tag != WAVE_FORMAT_PCM:
                raise InvalidFormat(f"Unsupported WAV encoding (format tag {format_tag:#06x})")
            if bits != 16:
                raise InvalidFormat(f"Unsupported bit depth: {bits} (expected 16-bit PCM)")
            if channels == 0 or sample_rate == 0:
                raise InvalidFormat("WAV header declares zero channels or zero sample rate")

            # Streaming encoders write a placeholder size; take what is present.
            body_end = min(body_start + chunk_size, len(data))
            frame_bytes = channels * BYTES_PER_SAMPLE
            usable = (body_end - body_start) // frame_bytes * frame_bytes
            return AudioBuffer(
                data=data[body_start : body_start + usable],
                channels=channels,
                sample_rate=sample_rate,
                bits_per_sample=bits,
            )

        # Chunks are word aligned
        offset = body_start + chunk_size + (chunk_size & 1)

    if fmt is None:
        raise InvalidFormat("Missing fmt chunk")
    raise InvalidFormat("Missing data chunk")


def encode_wav(audio: np.ndarray, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Encode float32 audio as a canonical PCM16 WAV file.

    Args:
        audio: Float32 array, shape (frames,) or (frames, channels).
        sample_rate: Sample rate written to the header.

    Returns:
        WAV file bytes with a 44 byte header.
    """
    channels = 1 if audio.ndim == 1 else audio.shape[1]
    payload = float32_to_pcm16(audio.reshape(-1))
    block_align = channels * BYTES_PER_SAMPLE
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(payload),
        b"WAVE",
        b"fmt ",
        16,
        WAVE_FORMAT_PCM,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        16,
        b"data",
        len(payload),
    )
    return header + payload


def downmix(samples: np.ndarray, channels: int) -> np.ndarray:
    """Average interleaved channels into a single channel.

    Args:
        samples: Interleaved float32 samples, length a multiple of ``channels``.
        channels: Number of interleaved channels.

    Returns:
        Mono float32 array with one value per frame.
    """
    if channels == 1:
        return samples
    frames = samples.reshape(-1, channels)
    return frames.mean(axis=1, dtype=np.float32)


def resample_linear(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Resample by linear interpolation between neighbouring samples.

    The output holds ``round(len(samples) * target_rate / source_rate)``
    samples. No anti-aliasing filter is applied before downsampling; this
    trades some fidelity for speed and has no effect on correctness.
    """
    if source_rate == target_rate or len(samples) == 0:
        return samples
    out_len = int(round(len(samples) * target_rate / source_rate))
    if out_len == 0:
        return np.zeros(0, dtype=np.float32)
    positions = np.arange(out_len, dtype=np.float64) * (source_rate / target_rate)
    resampled = np.interp(positions, np.arange(len(samples), dtype=np.float64), samples)
    return resampled.astype(np.float32)


def duration_samples(duration_ms: int, sample_rate: int = SAMPLE_RATE) -> int:
    """Calculate number of samples for a given duration in milliseconds."""
    return sample_rate * duration_ms // 1000


class AudioDecoder:
    """Turns uploaded bytes into a mono float32 sample buffer at the engine rate.

    Stateless per call, so one instance is shared by all requests and
    ``decode`` may run concurrently from worker threads.
    """

    def __init__(self, target_rate: int = SAMPLE_RATE, transcoder: Transcoder | None = None):
        """Initialize the decoder.

        Args:
            target_rate: Sample rate the engine requires.
            transcoder: Converts non-WAV containers to PCM16 WAV. When None,
                non-WAV input is rejected as InvalidFormat.
        """
        self._target_rate = target_rate
        self._transcoder = transcoder

    @property
    def target_rate(self) -> int:
        return self._target_rate

    def decode(self, data: bytes) -> np.ndarray:
        """Decode input bytes to a SampleBuffer.

        Raises:
            InvalidFormat: Malformed header, unsupported encoding, or non-WAV
                input without a transcoder.
            EmptyAudio: No samples remain after decoding.
            AudioIOError: The transcoder failed.
        """
        if not data:
            raise EmptyAudio("Empty audio data")

        if not is_wav(data):
            if self._transcoder is None:
                raise InvalidFormat("Input is not a WAV file and transcoding is disabled")
            logger.debug("Transcoding %d bytes of non-WAV input", len(data))
            data = self._transcoder.to_wav(data)

        buffer = parse_wav(data)
        samples = pcm16_to_float32(buffer.data)
        samples = downmix(samples, buffer.channels)
        samples = resample_linear(samples, buffer.sample_rate, self._target_rate)

        if len(samples) == 0:
            raise EmptyAudio()

        logger.debug(
            "Decoded %.2fs of audio (%d ch @ %d Hz) to %d samples",
            buffer.duration_s,
            buffer.channels,
            buffer.sample_rate,
            len(samples),
        )
        return samples
