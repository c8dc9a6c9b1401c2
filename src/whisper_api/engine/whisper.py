"""Whisper engine running a local checkpoint through transformers.

This module imports torch at the top and should only be imported when the
real engine is configured.
"""

import logging
from pathlib import Path

import numpy as np
import torch

from whisper_api.constants import SAMPLE_RATE, WINDOW_SAMPLES
from whisper_api.engine.protocol import InferenceParams, RawSegment

logger = logging.getLogger("whisper_api.engine.whisper")


class WhisperEngine:
    """CPU/GPU speech-to-text engine backed by a Whisper checkpoint.

    The model is loaded eagerly in ``__init__``; a missing or corrupt
    checkpoint raises there, which aborts startup. Long audio is split into
    30 second windows and the window offset is added to each segment's
    timestamps.
    """

    def __init__(
        self,
        model_path: str | Path,
        threads: int = 4,
        device: str = "cpu",
        dtype: torch.dtype = torch.float32,
    ):
        """Load the Whisper processor and model.

        Args:
            model_path: Local directory holding a transformers Whisper checkpoint.
            threads: Intra-op thread count for CPU inference.
            device: Device to run inference on ("cpu" or "cuda").
            dtype: Model dtype.
        """
        from transformers import WhisperForConditionalGeneration, WhisperProcessor

        self._model_path = Path(model_path)
        self._device = device

        torch.set_num_threads(threads)
        self._processor = WhisperProcessor.from_pretrained(self._model_path)
        self._model = WhisperForConditionalGeneration.from_pretrained(
            self._model_path, torch_dtype=dtype
        ).to(device)
        self._model.eval()
        self._multilingual = bool(
            getattr(self._model.generation_config, "is_multilingual", False)
        )
        logger.info(
            "Whisper model loaded from %s on %s (multilingual=%s, threads=%d)",
            self._model_path,
            device,
            self._multilingual,
            threads,
        )

    def infer(self, samples: np.ndarray, params: InferenceParams) -> list[RawSegment]:
        """Transcribe a mono 16kHz buffer into timestamped segments."""
        segments: list[RawSegment] = []
        for window_start in range(0, len(samples), WINDOW_SAMPLES):
            window = samples[window_start : window_start + WINDOW_SAMPLES]
            offset_ms = window_start * 1000 // SAMPLE_RATE
            segments.extend(self._infer_window(window, params, offset_ms))
        return segments

    def _infer_window(
        self, window: np.ndarray, params: InferenceParams, offset_ms: int
    ) -> list[RawSegment]:
        window_ms = len(window) * 1000 // SAMPLE_RATE
        inputs = self._processor(window, sampling_rate=SAMPLE_RATE, return_tensors="pt")
        input_features = inputs.input_features.to(self._device, dtype=self._model.dtype)

        generate_kwargs = {
            "return_timestamps": True,
            "num_beams": params.num_beams,
            "do_sample": params.do_sample,
        }
        # English-only checkpoints reject language/task arguments
        if self._multilingual:
            generate_kwargs["language"] = params.language
            generate_kwargs["task"] = params.task

        with torch.no_grad():
            output_ids = self._model.generate(input_features, **generate_kwargs)

        decoded = self._processor.tokenizer.decode(
            output_ids[0], skip_special_tokens=True, output_offsets=True
        )

        segments = []
        for item in decoded["offsets"]:
            start_s, end_s = item["timestamp"]
            start_ms = offset_ms + int(round((start_s or 0.0) * 1000))
            end_ms = offset_ms + int(round((end_s if end_s is not None else window_ms / 1000) * 1000))
            segments.append(RawSegment(start_ms, end_ms, item["text"]))

        # No timestamp tokens were produced; keep the text as one window-wide segment
        if not segments and decoded["text"].strip():
            segments.append(RawSegment(offset_ms, offset_ms + window_ms, decoded["text"]))
        return segments

    def warmup(self) -> None:
        """Run one second of silence through the model."""
        self.infer(np.zeros(SAMPLE_RATE, dtype=np.float32), InferenceParams())
        logger.info("WhisperEngine warmed up on %s", self._device)

    def close(self) -> None:
        self._model = None
        self._processor = None

    @property
    def device(self) -> str:
        """Return the device the model is running on."""
        return self._device
