"""Core constants for the Whisper transcription service.

Whisper models consume 16kHz mono float32 audio and look at 30 second
windows at a time.
"""

# Audio format requirements
SAMPLE_RATE: int = 16000  # Hz - required by the Whisper feature extractor
BYTES_PER_SAMPLE: int = 2  # 16-bit PCM
PCM16_SCALE: float = 32768.0

# Whisper attends to at most 30s of audio per forward pass
WINDOW_SECONDS: int = 30
WINDOW_SAMPLES: int = SAMPLE_RATE * WINDOW_SECONDS

# RIFF/WAVE format tags
WAVE_FORMAT_PCM: int = 0x0001
WAVE_FORMAT_EXTENSIBLE: int = 0xFFFE

# Service identification
SERVICE_NAME: str = "Whisper Transcription API"
DEFAULT_MAX_BODY_BYTES: int = 100 * 1024 * 1024
