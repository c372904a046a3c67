"""
Configuration for the serverless stack verifier

Values come from environment variables; command line flags override them.
"""
import os
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional

from .errors import StackVerifierError

DEFAULT_STACK_NAME = "test-serverless-app"
DEFAULT_BUCKET_NAME = "devex-test-serverless-app"
DEFAULT_REGION = "us-east-1"
DEFAULT_EXPECTED_FUNCTION_COUNT = 11
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_AWS_TIMEOUT_SECONDS = 60.0
DEFAULT_DELETE_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_DELETE_MAX_ATTEMPTS = 60


class ConfigurationError(StackVerifierError):
    """Raised when a configuration value is missing or invalid"""
    pass


@dataclass
class VerifierConfig:
    """Settings for one verification run"""
    stack_name: str = DEFAULT_STACK_NAME
    bucket_name: str = DEFAULT_BUCKET_NAME
    region: str = DEFAULT_REGION
    expected_function_count: int = DEFAULT_EXPECTED_FUNCTION_COUNT
    http_timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    aws_timeout: float = DEFAULT_AWS_TIMEOUT_SECONDS
    delete_poll_interval: float = DEFAULT_DELETE_POLL_INTERVAL_SECONDS
    delete_max_attempts: int = DEFAULT_DELETE_MAX_ATTEMPTS

    def validate(self) -> "VerifierConfig":
        """Check values and return self"""
        if not self.stack_name or not self.stack_name.strip():
            raise ConfigurationError("Stack name cannot be empty")
        if not self.bucket_name or not self.bucket_name.strip():
            raise ConfigurationError("Bucket name cannot be empty")
        if not self.region:
            raise ConfigurationError("AWS region cannot be empty")
        if self.expected_function_count < 0:
            raise ConfigurationError(
                f"Expected function count must be non-negative, got {self.expected_function_count}"
            )
        if self.http_timeout <= 0 or self.aws_timeout <= 0:
            raise ConfigurationError("Timeouts must be positive")
        if self.delete_poll_interval < 0:
            raise ConfigurationError("Delete poll interval must be non-negative")
        if self.delete_max_attempts < 1:
            raise ConfigurationError("Delete max attempts must be at least 1")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def get_configuration(overrides: Optional[Dict[str, Any]] = None) -> VerifierConfig:
    """
    Build the run configuration from environment variables

    Args:
        overrides: Values that take precedence over the environment; None entries are ignored

    Returns:
        Validated VerifierConfig
    """
    config = VerifierConfig(
        stack_name=os.environ.get("STACK_NAME", DEFAULT_STACK_NAME),
        bucket_name=os.environ.get("BUCKET_NAME", DEFAULT_BUCKET_NAME),
        region=os.environ.get("AWS_REGION", DEFAULT_REGION),
        expected_function_count=_env_int("EXPECTED_FUNCTION_COUNT", DEFAULT_EXPECTED_FUNCTION_COUNT),
        http_timeout=_env_float("HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS),
        aws_timeout=_env_float("AWS_TIMEOUT_SECONDS", DEFAULT_AWS_TIMEOUT_SECONDS),
        delete_poll_interval=_env_float("DELETE_POLL_INTERVAL_SECONDS", DEFAULT_DELETE_POLL_INTERVAL_SECONDS),
        delete_max_attempts=_env_int("DELETE_MAX_ATTEMPTS", DEFAULT_DELETE_MAX_ATTEMPTS)
    )

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if not hasattr(config, key):
            raise ConfigurationError(f"Unknown configuration key: {key}")
        setattr(config, key, value)

    return config.validate()
