"""Pydantic models for configuration schema."""

import ipaddress
import re
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator

REGION_PATTERN = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-\d$")

STORAGE_CLASSES = (
    "S3_STANDARD",
    "S3_INTELLIGENT_TIERING",
    "S3_STANDARD_IA",
    "S3_ONEZONE_IA",
)
SQUASH_MODES = ("RootSquash", "NoSquash", "AllSquash")


def _validate_tags(v: Dict[str, str]) -> Dict[str, str]:
    for key, value in v.items():
        if not key or not isinstance(key, str):
            raise ValueError(f"Tag key must be a non-empty string: {key}")
        if not isinstance(value, str):
            raise ValueError(f"Tag value must be a string for key '{key}': {value}")
        if len(key) > 128:
            raise ValueError(f"Tag key exceeds 128 characters: {key}")
        if len(value) > 256:
            raise ValueError(f"Tag value exceeds 256 characters for key '{key}'")
        if key.startswith("aws:") or key.startswith("s3nfs:"):
            raise ValueError(f"Tag key uses a reserved prefix: {key}")
    return v


def _validate_region(v: str) -> str:
    if not REGION_PATTERN.match(v):
        raise ValueError(f"Invalid AWS region: {v}")
    return v


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    region: str = Field(..., min_length=1)

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        return _validate_region(v)


class GatewayVariables(BaseModel):
    """Variables substituted into the gateway topology."""

    model_config = {"extra": "forbid"}

    vpc_id: str = Field(..., pattern="^vpc-[0-9a-f]+$")
    subnet_id: str = Field(..., pattern="^subnet-[0-9a-f]+$")
    subnet_cidr: str = Field(..., description="CIDR allowed to mount the share")
    bucket_name: str = Field(..., min_length=3, max_length=63, pattern="^[a-z0-9][a-z0-9.-]+[a-z0-9]$")

    name_prefix: str = Field("s3-nfs", min_length=1, max_length=32, pattern="^[a-zA-Z0-9-]+$")
    gateway_name: Optional[str] = Field(None, min_length=2, max_length=255)
    file_share_name: Optional[str] = Field(None, min_length=1, max_length=255)
    instance_type: str = Field("m5.xlarge", min_length=1)
    ami_id: Optional[str] = Field(None, pattern="^ami-[0-9a-f]+$")
    cache_volume_size_gb: int = Field(150, ge=150, le=16384)
    root_volume_size_gb: int = Field(80, ge=80, le=16384)
    gateway_timezone: str = Field("GMT", pattern=r"^GMT([+-]\d{1,2}:\d{2})?$")
    default_storage_class: str = "S3_STANDARD"
    squash: str = "RootSquash"
    notification_settling_seconds: int = Field(60, ge=1, le=2592000)
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator("subnet_cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        """Validate CIDR notation."""
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"Invalid CIDR block '{v}': {e}")
        return v

    @field_validator("default_storage_class")
    @classmethod
    def validate_storage_class(cls, v: str) -> str:
        if v not in STORAGE_CLASSES:
            raise ValueError(f"Must be one of: {', '.join(STORAGE_CLASSES)}")
        return v

    @field_validator("squash")
    @classmethod
    def validate_squash(cls, v: str) -> str:
        if v not in SQUASH_MODES:
            raise ValueError(f"Must be one of: {', '.join(SQUASH_MODES)}")
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Validate tag keys and values."""
        return _validate_tags(v)


class RetrySettings(BaseModel):
    """Bounded exponential backoff for provider calls."""

    max_retries: int = Field(5, ge=0, le=20)
    base_delay: float = Field(1.0, gt=0)
    max_delay: float = Field(30.0, gt=0)


class ReadinessSettings(BaseModel):
    """Polling parameters for asynchronous readiness."""

    timeout: float = Field(900.0, gt=0)
    initial_delay: float = Field(5.0, gt=0)
    max_delay: float = Field(30.0, gt=0)
    backoff: float = Field(1.5, ge=1.0)


class ExecutionSettings(BaseModel):
    """Apply execution tuning."""

    parallelism: int = Field(4, ge=1, le=32)
    apply_timeout: float = Field(3600.0, gt=0)
    auto_rollback: bool = False
    retry: RetrySettings = Field(default_factory=RetrySettings)
    readiness: ReadinessSettings = Field(default_factory=ReadinessSettings)


class EnvironmentConfig(BaseModel):
    """Environment-specific configuration."""

    name: str = Field(..., min_length=1, pattern="^[a-z0-9-]+$")
    account: Optional[str] = Field(None, pattern="^[0-9]{12}$")
    region: Optional[str] = None
    profile: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: Optional[str]) -> Optional[str]:
        """Validate AWS region format."""
        return _validate_region(v) if v is not None else v
