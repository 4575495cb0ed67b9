"""Configuration loading with YAML parsing and validation."""

from pathlib import Path
from typing import Any

import pydantic_yaml

from exprcall_pipeline.errors import ConfigurationError

from .schema import PipelineConfig


def load_config(config_path: Path | str) -> PipelineConfig:
    """
    Load and validate pipeline configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated PipelineConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        pydantic.ValidationError: If config is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Read YAML file
    yaml_content = config_path.read_text()

    # Parse and validate with Pydantic
    return pydantic_yaml.parse_yaml_raw_as(PipelineConfig, yaml_content)


def _set_dotted(config_dict: dict[str, Any], key: str, value: Any) -> None:
    """Set `value` at a dotted path such as "conflicts.policy"."""
    *parents, leaf = key.split(".")
    target = config_dict
    for part in parents:
        if not isinstance(target.get(part), dict):
            raise ConfigurationError(f"Unknown configuration section in override: {key}")
        target = target[part]
    if leaf not in target:
        raise ConfigurationError(f"Unknown configuration key in override: {key}")
    target[leaf] = value


def load_config_with_overrides(
    config_path: Path | str,
    overrides: dict[str, Any],
) -> PipelineConfig:
    """
    Load config from YAML and apply dictionary overrides.

    Used by CLI flags that override config file values. Overrides whose
    value is None are ignored, so unset flags keep the file value.

    Args:
        config_path: Path to YAML configuration file
        overrides: Values to override, keyed by dotted path
                   (e.g. {"execution.max_workers": 4})

    Returns:
        Validated PipelineConfig with overrides applied

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If an override addresses an unknown key
        pydantic.ValidationError: If final config is invalid
    """
    # Load base config, then apply overrides to its dict form
    config_dict = load_config(config_path).model_dump()

    for key, value in overrides.items():
        if value is None:
            continue
        _set_dotted(config_dict, key, value)

    # Re-validate with overrides applied
    return PipelineConfig.model_validate(config_dict)
