"""Pydantic schemas for the HTTP API contracts."""

from pydantic import BaseModel, Field

from whisper_api.mapper import TranscriptionResult


class SegmentOut(BaseModel):
    id: int
    start: int = Field(description="Segment start in milliseconds")
    end: int = Field(description="Segment end in milliseconds")
    text_start: int
    text_end: int
    text: str


class TranscriptionOut(BaseModel):
    text: str
    segments: list[SegmentOut]

    @classmethod
    def from_result(cls, result: TranscriptionResult) -> "TranscriptionOut":
        return cls(
            text=result.text,
            segments=[
                SegmentOut(
                    id=seg.id,
                    start=seg.start_ms,
                    end=seg.end_ms,
                    text_start=seg.text_start,
                    text_end=seg.text_end,
                    text=seg.text,
                )
                for seg in result.segments
            ],
        )


class TranscribeResponse(BaseModel):
    result: TranscriptionOut
    processing_time_ms: int


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str


class InfoResponse(BaseModel):
    name: str
    version: str
    model_path: str
    threads: int
    engine: str
    pool_size: int
    max_queue: int
    sample_rate: int
    endpoints: dict[str, str]


class ModelEntry(BaseModel):
    name: str
    path: str
    size_bytes: int


class ModelsResponse(BaseModel):
    configured_model_path: str
    configured_model_exists: bool
    model_directory: str
    models: list[ModelEntry]
    count: int


class ErrorResponse(BaseModel):
    error: str
    kind: str
    status: int
