"""Engine loading and the process-lifetime model handle."""

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from whisper_api.config import ServiceConfig
from whisper_api.engine.protocol import Engine, InferenceParams, RawSegment
from whisper_api.errors import ModelLoadFailure

logger = logging.getLogger("whisper_api.engine")

__all__ = [
    "Engine",
    "InferenceParams",
    "ModelHandle",
    "RawSegment",
    "load_model",
    "load_models",
]


@dataclass(frozen=True)
class ModelHandle:
    """A loaded engine instance, shared read-only by every request.

    Not safe for concurrent ``infer`` calls; only the InferenceGate calls it.
    """

    engine: Engine
    model_path: Path
    index: int = 0

    def infer(self, samples: np.ndarray, params: InferenceParams) -> list[RawSegment]:
        return self.engine.infer(samples, params)

    def close(self) -> None:
        self.engine.close()


def _build_engine(config: ServiceConfig) -> Engine:
    if config.engine == "fake":
        from whisper_api.engine.fake import FakeEngine

        return FakeEngine()

    from whisper_api.engine.whisper import WhisperEngine

    return WhisperEngine(config.model_path, threads=config.threads, device=config.device)


def load_model(config: ServiceConfig, index: int = 0) -> ModelHandle:
    """Load and warm up one engine instance.

    Raises:
        ModelLoadFailure: The model path does not exist or the engine failed
            to load. Callers treat this as fatal.
    """
    path = Path(config.model_path)
    if not path.exists():
        raise ModelLoadFailure(f"Model file not found: {path}")

    try:
        engine = _build_engine(config)
        engine.warmup()
    except Exception as e:
        raise ModelLoadFailure(f"Failed to initialize model from {path}: {e!r}") from e

    logger.info("Model instance %d loaded (%s engine) from %s", index, config.engine, path)
    return ModelHandle(engine=engine, model_path=path, index=index)


def load_models(config: ServiceConfig) -> list[ModelHandle]:
    """Load ``config.pool_size`` independent instances, closing all on failure."""
    handles: list[ModelHandle] = []
    try:
        for index in range(config.pool_size):
            handles.append(load_model(config, index))
    except ModelLoadFailure:
        for handle in handles:
            handle.close()
        raise
    return handles
