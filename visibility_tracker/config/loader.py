"""
Configuration loader for the visibility tracker.

Loads tracker.config.yaml, expands ${ENV_VAR} references, validates the result
with TrackerConfig and resolves provider API keys into a RuntimeConfig.

Functions:
    load_config: Main entrypoint
    resolve_api_keys: Environment lookup for every enabled provider
"""

import os
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from visibility_tracker.exceptions import (
    APIKeyMissingError,
    ConfigFileNotFoundError,
    ConfigValidationError,
)

from .schema import RuntimeConfig, RuntimeProvider, TrackerConfig

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


def load_settings(config_path: str | Path) -> TrackerConfig:
    """
    Load and validate tracker.config.yaml without resolving API keys.

    Used by commands that never call a provider (init-db, usage, show-run).

    Raises:
        ConfigFileNotFoundError: If the file doesn't exist
        ConfigValidationError: If YAML is invalid or validation fails
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigFileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with config_path.open(encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML syntax in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigValidationError(
            f"Failed to read configuration file {config_path}: {e}"
        ) from e

    if raw_config is None:
        raise ConfigValidationError(f"Configuration file is empty: {config_path}")

    raw_config = _resolve_env_vars_recursive(raw_config)

    try:
        return TrackerConfig.model_validate(raw_config)
    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        raise ConfigValidationError(
            f"Configuration validation failed in {config_path}:\n"
            + "\n".join(error_messages)
        ) from e


def load_config(config_path: str | Path) -> RuntimeConfig:
    """
    Load tracker.config.yaml and resolve API keys from environment variables.

    Args:
        config_path: Path to the YAML file (relative or absolute)

    Returns:
        RuntimeConfig with enabled providers and their resolved keys

    Raises:
        ConfigFileNotFoundError: If the file doesn't exist
        ConfigValidationError: If YAML is invalid or validation fails
        APIKeyMissingError: If an enabled provider's key is not set

    Security:
        - Uses yaml.safe_load()
        - API keys are read from the environment only and never logged
    """
    tracker_config = load_settings(config_path)

    return RuntimeConfig(
        database_path=tracker_config.database_path,
        providers=resolve_api_keys(tracker_config),
        engine=tracker_config.engine,
        quota=tracker_config.quota,
        scheduler=tracker_config.scheduler,
        notifications=tracker_config.notifications,
    )


def resolve_api_keys(config: TrackerConfig) -> list[RuntimeProvider]:
    """
    Resolve API keys for every enabled provider.

    Raises:
        APIKeyMissingError: Naming the first missing environment variable
    """
    resolved = []
    for provider_config in config.providers:
        if not provider_config.enabled:
            continue

        api_key = os.environ.get(provider_config.env_api_key)
        if not api_key or api_key.isspace():
            raise APIKeyMissingError(
                f"Environment variable ${provider_config.env_api_key} not set "
                f"(required by provider '{provider_config.provider}')"
            )

        resolved.append(
            RuntimeProvider(
                provider=provider_config.provider,
                model_name=provider_config.model_name,
                api_key=api_key,
                max_tokens=provider_config.max_tokens,
            )
        )

    return resolved


def _resolve_env_vars_recursive(obj):
    """
    Recursively resolve ${ENV_VAR} references in nested dicts/lists.

    Raises:
        APIKeyMissingError: If a referenced variable is not set
    """
    if isinstance(obj, dict):
        return {key: _resolve_env_vars_recursive(value) for key, value in obj.items()}

    if isinstance(obj, list):
        return [_resolve_env_vars_recursive(item) for item in obj]

    if isinstance(obj, str):

        def substitute(match: re.Match) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is None:
                raise APIKeyMissingError(
                    f"Environment variable ${{{match.group(1)}}} not set. "
                    f"Please set it in your environment or .env file."
                )
            return env_value

        return ENV_VAR_PATTERN.sub(substitute, obj)

    return obj
