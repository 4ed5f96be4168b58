"""Environment-based configuration for LiveLabel."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from LIVELABEL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LIVELABEL_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    classification_model: str = "inception_v3"
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Camera
    capture_enabled: bool = True
    camera_index: int = Field(default=0, ge=0)
    capture_width: int = Field(default=1280, ge=1)
    capture_height: int = Field(default=720, ge=1)

    # Frame conversion
    resize_mode: Literal["stretch", "fill"] = "stretch"

    # Input limits
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Output
    top_k: int = Field(default=5, ge=1)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
