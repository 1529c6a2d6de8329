"""YAML configuration parser for the S3 NFS gateway project."""

import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from s3nfs_deploy.utils.errors import ConfigurationError
from .models import (
    EnvironmentConfig,
    ExecutionSettings,
    GatewayVariables,
    ProjectConfig,
)

ENV_VAR_PREFIX = "S3NFS_VAR_"
DEFAULT_ENVIRONMENT = "default"


class ConfigValidationError(ConfigurationError):
    """Raised when configuration validation fails, before any provider call."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None, **kwargs):
        self.errors = errors or []
        super().__init__(message, **kwargs)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  • {location}: {msg}")

        return "\n".join(error_lines)


def parse_var_overrides(pairs: Iterable[str]) -> Dict[str, str]:
    """Parse ``key=value`` strings given with ``--var``.

    Raises:
        ConfigValidationError: If a pair has no ``=``
    """
    overrides = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigValidationError(
                f"Invalid variable override '{pair}', expected key=value"
            )
        overrides[key.strip()] = value
    return overrides


def env_var_overrides(environ: Mapping[str, str]) -> Dict[str, str]:
    """Collect ``S3NFS_VAR_<NAME>`` environment variables as lowercase variable names."""
    return {
        key[len(ENV_VAR_PREFIX):].lower(): value
        for key, value in environ.items()
        if key.startswith(ENV_VAR_PREFIX) and len(key) > len(ENV_VAR_PREFIX)
    }


def _collect(errors: List[Dict], prefix: List[Any], error: ValidationError) -> None:
    for item in error.errors():
        errors.append({"loc": prefix + list(item["loc"]), "msg": item["msg"]})


class Config:
    """Configuration manager for the gateway project.

    Variable precedence, highest first: ``--var`` overrides,
    ``S3NFS_VAR_*`` environment variables, the selected environment's
    ``variables`` section, the top-level ``variables`` section.
    """

    def __init__(
        self,
        config_path: str,
        environment: Optional[str] = None,
        overrides: Optional[Dict[str, str]] = None,
        environ: Optional[Mapping[str, str]] = None
    ):
        """Initialize configuration manager.

        Args:
            config_path: Path to s3nfs.yaml configuration file
            environment: Environment section to apply, if any
            overrides: Variable overrides from the command line
            environ: Process environment (defaults to os.environ)
        """
        self.config_path = Path(config_path)
        self.environment_name = environment
        self.overrides = dict(overrides or {})
        self.environ = os.environ if environ is None else environ
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.variables: Optional[GatewayVariables] = None
        self.settings: ExecutionSettings = ExecutionSettings()
        self.environments: Dict[str, EnvironmentConfig] = {}

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If the file is missing, unparseable or invalid
        """
        if not self.config_path.exists():
            raise ConfigValidationError(
                f"Configuration file not found: {self.config_path}",
                suggestions=["Create s3nfs.yaml or pass --config"]
            )

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}", cause=e) from e

        if not isinstance(self.data, dict):
            raise ConfigValidationError("Configuration root must be a mapping")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        return self

    def validate(self) -> List[Dict]:
        """Validate every section, collecting all errors.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: List[Dict] = []

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        else:
            try:
                self.project = ProjectConfig(**(self.data["project"] or {}))
            except ValidationError as e:
                _collect(errors, ["project"], e)

        try:
            self.settings = ExecutionSettings(**(self.data.get("settings") or {}))
        except ValidationError as e:
            _collect(errors, ["settings"], e)

        environments = self.data.get("environments") or {}
        if not isinstance(environments, dict):
            errors.append({"loc": ["environments"], "msg": "Environments must be a dictionary"})
            environments = {}
        for env_name, env_data in environments.items():
            try:
                self.environments[env_name] = EnvironmentConfig(**{**(env_data or {}), "name": env_name})
            except ValidationError as e:
                _collect(errors, ["environments", env_name], e)

        if self.environment_name and self.environment_name not in environments:
            available = ", ".join(environments) or "none"
            errors.append({
                "loc": ["environments", self.environment_name],
                "msg": f"Environment not found. Available environments: {available}",
            })

        variables = self.data.get("variables") or {}
        if not isinstance(variables, dict):
            errors.append({"loc": ["variables"], "msg": "Variables must be a dictionary"})
        else:
            try:
                self.variables = GatewayVariables(**self.merged_variables(variables))
            except ValidationError as e:
                _collect(errors, ["variables"], e)

        return errors

    def merged_variables(self, base: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment, environment-variable and CLI overrides in order."""
        merged = dict(base)
        env = self.environments.get(self.environment_name or "")
        if env is not None:
            merged.update(env.variables)
        merged.update(env_var_overrides(self.environ))
        merged.update(self.overrides)
        return merged

    @property
    def environment(self) -> Optional[EnvironmentConfig]:
        return self.environments.get(self.environment_name or "")

    @property
    def region(self) -> str:
        """Environment region, falling back to the project region."""
        env = self.environment
        if env is not None and env.region:
            return env.region
        return self.project.region

    @property
    def profile(self) -> Optional[str]:
        env = self.environment
        return env.profile if env is not None else None

    @property
    def environment_label(self) -> str:
        return self.environment_name or DEFAULT_ENVIRONMENT

    def to_dict(self) -> Dict:
        """Convert resolved configuration to dictionary."""
        return {
            "project": self.project.model_dump() if self.project else {},
            "environment": self.environment_label,
            "region": self.region if self.project else None,
            "variables": self.variables.model_dump() if self.variables else {},
            "settings": self.settings.model_dump(),
        }
