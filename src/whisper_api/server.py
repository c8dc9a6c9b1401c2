"""FastAPI HTTP server for batch transcription.

The app depends only on loaded ModelHandles, so tests build it around a
FakeEngine while production loads the Whisper engine first.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from starlette.datastructures import UploadFile

from whisper_api import __version__
from whisper_api.audio import AudioDecoder
from whisper_api.config import ServiceConfig
from whisper_api.constants import SAMPLE_RATE, SERVICE_NAME
from whisper_api.dispatcher import RequestContext, RequestDispatcher
from whisper_api.engine import ModelHandle, load_models
from whisper_api.engine.protocol import InferenceParams
from whisper_api.errors import InvalidFormat, install_error_handlers
from whisper_api.gate import InferenceGate
from whisper_api.schemas import (
    ErrorResponse,
    HealthResponse,
    InfoResponse,
    ModelEntry,
    ModelsResponse,
    TranscribeResponse,
    TranscriptionOut,
)
from whisper_api.transcode import FFmpegTranscoder

logger = logging.getLogger("whisper_api.server")

ENDPOINTS = {
    "POST /transcribe": "Transcribe audio (raw WAV body or multipart file)",
    "GET /health": "Health check",
    "GET /info": "API information",
    "GET /models": "List available model files",
}

MODEL_FILE_SUFFIXES = (".bin", ".safetensors", ".pt", ".gguf")


def create_app(config: ServiceConfig, handles: list[ModelHandle]) -> FastAPI:
    """Create a FastAPI application around already-loaded engine instances.

    Args:
        config: Immutable service configuration.
        handles: Loaded model handles (real or fake engines).

    Returns:
        Configured FastAPI application.
    """
    transcoder = (
        FFmpegTranscoder(config.ffmpeg_binary, SAMPLE_RATE, config.transcode_timeout_s)
        if config.ffmpeg_binary
        else None
    )
    decoder = AudioDecoder(SAMPLE_RATE, transcoder)
    gate = InferenceGate(handles, max_queue=config.max_queue)
    dispatcher = RequestDispatcher(decoder, gate)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await gate.start()
        yield
        await gate.stop()
        for handle in handles:
            handle.close()

    app = FastAPI(title=SERVICE_NAME, version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.gate = gate
    app.state.dispatcher = dispatcher
    install_error_handlers(app)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Liveness check; never touches the inference gate."""
        return HealthResponse(status="ok", version=__version__)

    @app.get("/info", response_model=InfoResponse)
    async def info():
        return InfoResponse(
            name=SERVICE_NAME,
            version=__version__,
            model_path=str(config.model_path),
            threads=config.threads,
            engine=config.engine,
            pool_size=gate.pool_size,
            max_queue=gate.max_queue,
            sample_rate=SAMPLE_RATE,
            endpoints=ENDPOINTS,
        )

    @app.get("/models", response_model=ModelsResponse)
    def list_models():
        """List model checkpoints next to the configured model."""
        models = discover_models(config.model_directory)
        return ModelsResponse(
            configured_model_path=str(config.model_path),
            configured_model_exists=config.model_path.exists(),
            model_directory=str(config.model_directory),
            models=models,
            count=len(models),
        )

    @app.post(
        "/transcribe",
        response_model=TranscribeResponse,
        responses={code: {"model": ErrorResponse} for code in (400, 413, 500, 502, 503)},
    )
    async def transcribe(request: Request, language: str | None = None):
        """Transcribe a WAV/PCM16 body (or anything ffmpeg can read).

        Query:
        - language: Override the configured decoding language.
        """
        audio = await _read_audio(request, config.max_body_bytes)
        params = InferenceParams(language=language or config.language)
        ctx = RequestContext(audio=audio, params=params)
        result = await dispatcher.dispatch(ctx)
        return TranscribeResponse(
            result=TranscriptionOut.from_result(result),
            processing_time_ms=ctx.processing_time_ms,
        )

    return app


def build_app(config: ServiceConfig) -> FastAPI:
    """Load every engine instance, then create the app.

    Raises:
        ModelLoadFailure: Startup must abort; no app is returned.
    """
    handles = load_models(config)
    return create_app(config, handles)


async def _read_audio(request: Request, max_bytes: int) -> bytes:
    """Read the upload from a raw body or the first multipart file field.

    The limit applies to the whole request body and is enforced while it is
    received, so an oversized chunked upload is cut off early.
    """
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > max_bytes:
        raise InvalidFormat(f"Audio payload exceeds {max_bytes} bytes", status_code=413)

    body = await _read_body(request, max_bytes)

    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data"):
        return body

    async def replay() -> dict:
        return {"type": "http.request", "body": body, "more_body": False}

    form = await Request(request.scope, replay).form()
    try:
        # Form values are starlette UploadFile instances, not the fastapi subclass
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            upload = next((v for v in form.values() if isinstance(v, UploadFile)), None)
        if upload is None:
            raise InvalidFormat("Multipart request has no file field")
        return await upload.read()
    finally:
        await form.close()


async def _read_body(request: Request, max_bytes: int) -> bytes:
    """Collect the request body, raising 413 as soon as it passes ``max_bytes``."""
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise InvalidFormat(f"Audio payload exceeds {max_bytes} bytes", status_code=413)
    return bytes(body)


def discover_models(directory: Path) -> list[ModelEntry]:
    """Find model checkpoints in ``directory``.

    A checkpoint is either a transformers model directory (one holding a
    ``config.json``) or a single weights file. Unreadable directories yield
    an empty list.
    """
    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as e:
        logger.warning("Cannot read model directory %s: %s", directory, e)
        return []

    models = []
    for path in entries:
        if path.is_dir() and (path / "config.json").is_file():
            size = sum(f.stat().st_size for f in path.rglob("*") if f.is_file())
        elif path.is_file() and path.suffix in MODEL_FILE_SUFFIXES:
            size = path.stat().st_size
        else:
            continue
        models.append(ModelEntry(name=path.name, path=str(path), size_bytes=size))
    return models
