"""Fake engine for CPU-based testing.

Returns deterministic output based on audio characteristics,
allowing reliable tests and local development without model weights.
"""

import hashlib
import time

import numpy as np

from whisper_api.constants import SAMPLE_RATE
from whisper_api.engine.protocol import InferenceParams, RawSegment

# Peak amplitude below which a one-second window counts as silence
SILENCE_THRESHOLD: float = 1e-3


class FakeEngine:
    """Deterministic CPU engine for testing.

    Emits one segment per non-silent second of audio. Each segment's text
    embeds a hash of the whole input, so results can be matched back to the
    request that produced them. Silence yields no segments.
    """

    def __init__(self, latency_ms: float = 0.0):
        """Initialize the fake engine.

        Args:
            latency_ms: Simulated inference latency in milliseconds.
        """
        self._latency_ms = latency_ms
        self._call_count = 0
        self._closed = False

    def infer(self, samples: np.ndarray, params: InferenceParams) -> list[RawSegment]:
        """Generate deterministic segments based on audio properties."""
        if self._closed:
            raise RuntimeError("engine is closed")
        if self._latency_ms > 0:
            time.sleep(self._latency_ms / 1000.0)

        self._call_count += 1
        audio_hash = self.hash_audio(samples)
        segments = []

        for index, start in enumerate(range(0, len(samples), SAMPLE_RATE)):
            window = samples[start : start + SAMPLE_RATE]
            if float(np.max(np.abs(window))) < SILENCE_THRESHOLD:
                continue
            start_ms = start * 1000 // SAMPLE_RATE
            end_ms = (start + len(window)) * 1000 // SAMPLE_RATE
            segments.append(RawSegment(start_ms, end_ms, f" [fake:{audio_hash[:8]}#{index}]"))

        return segments

    def warmup(self) -> None:
        """No-op warmup for fake engine."""
        pass

    def close(self) -> None:
        self._closed = True

    @property
    def call_count(self) -> int:
        """Number of infer calls made."""
        return self._call_count

    @staticmethod
    def hash_audio(samples: np.ndarray) -> str:
        """Hash the full sample buffer for deterministic output."""
        data = np.ascontiguousarray(samples, dtype=np.float32).tobytes()
        return hashlib.sha256(data).hexdigest()
