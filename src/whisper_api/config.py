"""Service configuration resolved from the environment and a local .env file.

The config is built once at startup and passed explicitly to the components
that need it; nothing reads os.environ after ``ServiceConfig.from_env``.
"""

import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from whisper_api.constants import DEFAULT_MAX_BODY_BYTES

# Field name -> environment variable
ENV_VARS: dict[str, str] = {
    "model_path": "WHISPER_MODEL",
    "host": "WHISPER_HOST",
    "port": "WHISPER_PORT",
    "threads": "WHISPER_THREADS",
    "log_level": "LOG_LEVEL",
    "engine": "WHISPER_ENGINE",
    "device": "WHISPER_DEVICE",
    "pool_size": "WHISPER_POOL_SIZE",
    "max_queue": "WHISPER_MAX_QUEUE",
    "language": "WHISPER_LANGUAGE",
    "ffmpeg_binary": "FFMPEG_BINARY",
    "transcode_timeout_s": "FFMPEG_TIMEOUT",
    "max_body_bytes": "WHISPER_MAX_BODY_BYTES",
}

ENGINES = ("whisper", "fake")

# Levels uvicorn accepts for log_level
LOG_LEVELS = ("critical", "error", "warning", "info", "debug", "trace")


class ServiceConfig(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_path: Path = Field(default=Path("./models/whisper-base.en"))
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    threads: int = Field(default=4, ge=1)
    log_level: str = Field(default="info")
    engine: str = Field(default="whisper")
    device: str = Field(default="cpu")
    pool_size: int = Field(default=1, ge=1)
    max_queue: int = Field(default=8, ge=1)
    language: str | None = Field(default="en")
    ffmpeg_binary: str | None = Field(default="ffmpeg")
    transcode_timeout_s: float = Field(default=60.0, gt=0)
    max_body_bytes: int = Field(default=DEFAULT_MAX_BODY_BYTES, ge=1)

    @field_validator("engine")
    @classmethod
    def _known_engine(cls, value: str) -> str:
        value = value.lower()
        if value not in ENGINES:
            raise ValueError(f"engine must be one of {ENGINES}, got {value!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.lower()
        if value not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {LOG_LEVELS}, got {value!r}")
        return value

    @field_validator("language", "ffmpeg_binary", mode="before")
    @classmethod
    def _blank_is_none(cls, value):
        # LANGUAGE= / FFMPEG_BINARY= in the environment disables the feature
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def from_env(
        cls,
        env_file: str | Path | None = ".env",
        environ: Mapping[str, str] | None = None,
    ) -> "ServiceConfig":
        """Build the config from ``env_file`` overlaid with the process environment.

        Args:
            env_file: Optional dotenv file; ignored when it does not exist.
            environ: Environment mapping, ``os.environ`` when None.

        Returns:
            A frozen ServiceConfig. Variables that are not set keep their defaults.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, str | None] = {}
        if env_file is not None and Path(env_file).is_file():
            values.update(dotenv_values(env_file))
        values.update(environ)

        fields = {
            name: values[var] for name, var in ENV_VARS.items() if values.get(var) is not None
        }
        return cls(**fields)

    @property
    def model_directory(self) -> Path:
        """Directory scanned by the /models endpoint."""
        return self.model_path.parent
