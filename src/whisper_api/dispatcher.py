"""Per-request pipeline: decode, wait for the gate, map, time."""

import asyncio
import logging
import time
from dataclasses import dataclass, field

import numpy as np

from whisper_api.audio import AudioDecoder
from whisper_api.engine.protocol import InferenceParams
from whisper_api.gate import InferenceGate
from whisper_api.mapper import TranscriptionResult, map_segments

logger = logging.getLogger("whisper_api.dispatcher")


@dataclass
class RequestContext:
    """Ephemeral state for one transcription request."""

    audio: bytes
    params: InferenceParams = field(default_factory=InferenceParams)
    samples: np.ndarray | None = None
    result: TranscriptionResult | None = None
    processing_time_ms: int | None = None


class RequestDispatcher:
    """Runs a RequestContext through decoder, gate and mapper.

    Decoding runs in the default thread pool so large uploads do not stall
    the event loop. An admission slot is reserved on the gate before
    decoding and held until inference returns, so decode work is bounded
    by the same capacity as inference.
    """

    def __init__(self, decoder: AudioDecoder, gate: InferenceGate):
        self._decoder = decoder
        self._gate = gate

    async def dispatch(self, ctx: RequestContext) -> TranscriptionResult:
        """Transcribe ``ctx.audio`` and record the outcome on ``ctx``.

        Raises:
            Overloaded: No admission slot is free or the gate queue is full.
            InvalidFormat, EmptyAudio, AudioIOError: The input could not be decoded.
            InferenceFailure: The engine failed.
        """
        start_time = time.perf_counter()
        self._gate.reserve()
        try:
            loop = asyncio.get_running_loop()
            ctx.samples = await loop.run_in_executor(None, self._decoder.decode, ctx.audio)
            raw_segments = await self._gate.transcribe(ctx.samples, ctx.params)
        finally:
            self._gate.release()
        ctx.result = map_segments(raw_segments)
        ctx.processing_time_ms = int((time.perf_counter() - start_time) * 1000)

        logger.info(
            "Transcription completed in %dms: %d characters, %d segments",
            ctx.processing_time_ms,
            len(ctx.result.text),
            len(ctx.result.segments),
        )
        return ctx.result
