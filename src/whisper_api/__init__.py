"""Whisper transcription service package."""

from whisper_api.constants import (
    SAMPLE_RATE,
    SERVICE_NAME,
    WINDOW_SAMPLES,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "SAMPLE_RATE",
    "SERVICE_NAME",
    "WINDOW_SAMPLES",
]
