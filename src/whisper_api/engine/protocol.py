"""Engine protocol defining the interface for speech-to-text backends.

This is the sealed boundary that isolates model/runtime code from the rest
of the system (gate, dispatcher, server, tests). Nothing outside the engine
package touches torch or transformers.
"""

from dataclasses import dataclass
from typing import Protocol

import numpy as np


@dataclass(frozen=True)
class InferenceParams:
    """Decoding parameters passed to every ``infer`` call.

    The defaults select greedy decoding, so identical samples always produce
    identical segments.
    """

    language: str | None = "en"
    task: str = "transcribe"
    num_beams: int = 1
    do_sample: bool = False


@dataclass(frozen=True)
class RawSegment:
    """One engine-native segment.

    ``text`` is ``bytes`` for engines that emit raw UTF-8 token bytes; such
    engines may split a multi-byte character across neighbouring segments.
    """

    start_ms: int
    end_ms: int
    text: str | bytes


class Engine(Protocol):
    """Protocol for speech-to-text inference engines.

    Implementations are NOT required to be safe for concurrent ``infer``
    calls; the InferenceGate guarantees at most one call per instance.
    """

    def infer(self, samples: np.ndarray, params: InferenceParams) -> list[RawSegment]:
        """Transcribe one mono float32 buffer.

        Args:
            samples: Float32 numpy array normalized to [-1, 1], 16kHz mono.
            params: Decoding parameters.

        Returns:
            Segments in engine order with millisecond timestamps.
        """
        ...

    def warmup(self) -> None:
        """Run a dummy inference so the first real request is not slow."""
        ...

    def close(self) -> None:
        """Release model memory. Called once at process shutdown."""
        ...
