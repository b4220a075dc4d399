"""
Configuration loader for the background-removal service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings

SUPPORTED_MODEL_VARIANTS = {
    "deeplabv3_mobilenet_v3_large",
    "deeplabv3_resnet50",
    "deeplabv3_resnet101",
}


class Settings(BaseSettings):
    # Segmentation model
    segmentation_model_variant: str = Field(
        "deeplabv3_mobilenet_v3_large", env="SEGMENTATION_MODEL_VARIANT"
    )
    segmentation_output_stride: int = Field(16, env="SEGMENTATION_OUTPUT_STRIDE")
    segmentation_multiplier: float = Field(0.75, env="SEGMENTATION_MULTIPLIER")
    segmentation_quant_bytes: int = Field(2, env="SEGMENTATION_QUANT_BYTES")
    segmentation_threshold: float = Field(0.7, env="SEGMENTATION_THRESHOLD")
    max_long_edge: int = Field(512, env="MAX_LONG_EDGE")

    # Backend platform (PostgREST tables + auth)
    backend_url: Optional[str] = Field(None, env="BACKEND_URL")
    backend_api_key: Optional[str] = Field(None, env="BACKEND_API_KEY")
    request_timeout_seconds: int = Field(30, env="REQUEST_TIMEOUT_SECONDS")
    rest_max_retries: int = Field(2, env="REST_MAX_RETRIES")

    # S3-compatible object storage
    storage_endpoint: Optional[str] = Field(None, env="STORAGE_ENDPOINT")
    storage_access_key_id: Optional[str] = Field(None, env="STORAGE_ACCESS_KEY_ID")
    storage_secret_access_key: Optional[str] = Field(None, env="STORAGE_SECRET_ACCESS_KEY")
    storage_region: str = Field("us-east-1", env="STORAGE_REGION")
    storage_public_base_url: Optional[str] = Field(None, env="STORAGE_PUBLIC_BASE_URL")
    original_bucket: str = Field("original-images", env="ORIGINAL_BUCKET")
    processed_bucket: str = Field("processed-images", env="PROCESSED_BUCKET")

    # Credits
    credit_cost: int = Field(1, env="CREDIT_COST")
    usage_action: str = Field("background_removal", env="USAGE_ACTION")

    # Service
    job_registry_size: int = Field(64, env="JOB_REGISTRY_SIZE")
    log_level: str = Field("INFO", env="LOG_LEVEL")
    debug: bool = Field(False, env="DEBUG")

    class Config:
        env_file = ".env"
        case_sensitive = False

    @validator("segmentation_model_variant")
    def validate_model_variant(cls, v: str) -> str:  # noqa: B902
        if v not in SUPPORTED_MODEL_VARIANTS:
            raise ValueError(
                "SEGMENTATION_MODEL_VARIANT must be one of "
                + "|".join(sorted(SUPPORTED_MODEL_VARIANTS))
            )
        return v

    @validator("segmentation_output_stride")
    def validate_output_stride(cls, v: int) -> int:  # noqa: B902
        if v <= 0:
            raise ValueError("SEGMENTATION_OUTPUT_STRIDE must be positive")
        return v

    @validator("segmentation_multiplier")
    def validate_multiplier(cls, v: float) -> float:  # noqa: B902
        if not 0.0 < v <= 1.0:
            raise ValueError("SEGMENTATION_MULTIPLIER must be in (0, 1]")
        return v

    @validator("segmentation_quant_bytes")
    def validate_quant_bytes(cls, v: int) -> int:  # noqa: B902
        if v not in {2, 4}:
            raise ValueError("SEGMENTATION_QUANT_BYTES must be 2 or 4")
        return v

    @validator("segmentation_threshold")
    def validate_threshold(cls, v: float) -> float:  # noqa: B902
        if not 0.0 <= v <= 1.0:
            raise ValueError("SEGMENTATION_THRESHOLD must be in [0, 1]")
        return v

    @property
    def backend_configured(self) -> bool:
        return bool(self.backend_url and self.backend_api_key)

    @property
    def storage_configured(self) -> bool:
        return all(
            [
                self.storage_endpoint,
                self.storage_access_key_id,
                self.storage_secret_access_key,
            ]
        )


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
