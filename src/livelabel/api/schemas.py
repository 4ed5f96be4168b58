"""Pydantic request/response schemas for the LiveLabel API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class LabelScore(BaseModel):
    """A single label with its predicted probability."""

    label: str
    probability: float = Field(description="Model probability; not renormalized")


class LabelResponse(BaseModel):
    """Currently displayed label from the live camera pipeline."""

    text: str = Field(description="Displayed label text")
    best_label: str | None = Field(description="Best label of the last result, if any")
    top: list[LabelScore]
    updates: int = Field(description="Number of results applied since startup")


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    best_label: str
    top: list[LabelScore]


class CaptureStats(BaseModel):
    """Frame counters of the live pipeline."""

    running: bool
    frames_captured: int
    frames_processed: int
    frames_dropped: int = Field(description="Frames lost to conversion or classification failures")
    frames_skipped: int = Field(description="Frames dropped because the pipeline was busy")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    capture: CaptureStats


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    input_size: str = Field(description="Input resolution as WIDTHxHEIGHT")
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
