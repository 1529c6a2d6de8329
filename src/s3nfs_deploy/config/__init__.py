"""Configuration management for the S3 NFS gateway project."""

from .models import (
    EnvironmentConfig,
    ExecutionSettings,
    GatewayVariables,
    ProjectConfig,
    ReadinessSettings,
    RetrySettings,
)
from .parser import Config, ConfigValidationError, parse_var_overrides

__all__ = [
    "EnvironmentConfig",
    "ExecutionSettings",
    "GatewayVariables",
    "ProjectConfig",
    "ReadinessSettings",
    "RetrySettings",
    "Config",
    "ConfigValidationError",
    "parse_var_overrides",
]
