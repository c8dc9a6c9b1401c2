"""ffmpeg-backed transcoding of arbitrary audio containers to PCM16 WAV."""

import logging
import subprocess

from whisper_api.constants import SAMPLE_RATE
from whisper_api.errors import AudioIOError

logger = logging.getLogger("whisper_api.transcode")


class FFmpegTranscoder:
    """Pipes upload bytes through ffmpeg and returns mono PCM16 WAV bytes.

    ffmpeg resamples to the engine rate on the way, so the decoder's own
    resampler is a no-op for transcoded input.
    """

    def __init__(
        self,
        binary: str = "ffmpeg",
        sample_rate: int = SAMPLE_RATE,
        timeout_s: float = 60.0,
    ):
        self._binary = binary
        self._sample_rate = sample_rate
        self._timeout_s = timeout_s

    def command(self) -> list[str]:
        """Build the ffmpeg argument list (stdin to stdout)."""
        return [
            self._binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            "pipe:0",
            "-ac",
            "1",  # mono
            "-ar",
            str(self._sample_rate),
            "-c:a",
            "pcm_s16le",  # 16-bit PCM
            "-f",
            "wav",
            "pipe:1",
        ]

    def to_wav(self, data: bytes) -> bytes:
        """Convert any ffmpeg-readable audio to PCM16 WAV.

        Raises:
            AudioIOError: ``client_fault=True`` when ffmpeg rejects the input,
                ``client_fault=False`` when ffmpeg is missing or times out.
        """
        try:
            proc = subprocess.run(
                self.command(),
                input=data,
                capture_output=True,
                timeout=self._timeout_s,
                check=False,
            )
        except FileNotFoundError as e:
            raise AudioIOError(
                f"ffmpeg binary not found: {self._binary}", client_fault=False
            ) from e
        except subprocess.TimeoutExpired as e:
            raise AudioIOError(
                f"ffmpeg timed out after {self._timeout_s}s", client_fault=False
            ) from e

        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            logger.warning("ffmpeg exited with %d: %s", proc.returncode, stderr)
            raise AudioIOError(
                f"ffmpeg exited with {proc.returncode}: {stderr}", client_fault=True
            )
        if not proc.stdout:
            raise AudioIOError("ffmpeg produced no output", client_fault=True)

        logger.debug("Transcoded %d bytes to %d bytes of WAV", len(data), len(proc.stdout))
        return proc.stdout
