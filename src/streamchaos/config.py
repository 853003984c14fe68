# src/streamchaos/config.py
"""Configuration loading for the harness.

Provides YAML preset loading and deep merge for configuration precedence
(CLI > config file > preset > defaults), validated through ExerciseConfig.
"""

from __future__ import annotations

import random
from pathlib import Path
from typing import Any

import yaml

from streamchaos.types import ExerciseConfig


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dicts, with override taking precedence.

    Args:
        base: Base configuration dict.
        override: Override values (takes precedence).

    Returns:
        Merged configuration dict (new dict, does not mutate inputs).
    """
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _get_presets_dir() -> Path:
    """Get the presets directory path."""
    return Path(__file__).parent / "presets"


def list_presets(presets_dir: Path | None = None) -> list[str]:
    """List available preset names.

    Returns:
        Sorted list of preset names (without .yaml extension).
    """
    directory = presets_dir if presets_dir is not None else _get_presets_dir()
    if not directory.exists():
        return []
    return sorted(p.stem for p in directory.glob("*.yaml"))


def load_preset(preset_name: str, presets_dir: Path | None = None) -> dict[str, Any]:
    """Load a preset configuration by name.

    Raises:
        FileNotFoundError: If preset does not exist.
        yaml.YAMLError: If preset YAML is malformed.
        ValueError: If preset is not a YAML mapping.
    """
    directory = presets_dir if presets_dir is not None else _get_presets_dir()
    preset_path = directory / f"{preset_name}.yaml"

    if not preset_path.exists():
        available = list_presets(directory)
        raise FileNotFoundError(f"Preset '{preset_name}' not found. Available presets: {available}")

    with preset_path.open() as f:
        loaded = yaml.safe_load(f)
        if not isinstance(loaded, dict):
            raise ValueError(f"Preset '{preset_name}' must be a YAML mapping, got {type(loaded).__name__}")
        return loaded


def load_config(
    *,
    preset: str | None = None,
    config_file: Path | None = None,
    cli_overrides: dict[str, Any] | None = None,
    presets_dir: Path | None = None,
) -> ExerciseConfig:
    """Load harness configuration with precedence handling.

    Precedence (highest to lowest):
    1. cli_overrides - Direct overrides from CLI flags
    2. config_file - User's YAML configuration file
    3. preset - Named preset configuration
    4. defaults - Built-in Pydantic defaults

    Raises:
        FileNotFoundError: If preset or config_file not found.
        yaml.YAMLError: If YAML is malformed.
        pydantic.ValidationError: If final config fails validation.
    """
    config_dict: dict[str, Any] = {}

    if preset is not None:
        config_dict = load_preset(preset, presets_dir)

    if config_file is not None:
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_file}")
        with config_file.open() as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(f"Config file {config_file} must be a YAML mapping, got {type(file_config).__name__}")
        config_dict = deep_merge(config_dict, file_config)

    if cli_overrides is not None:
        config_dict = deep_merge(config_dict, cli_overrides)

    config_dict["preset_name"] = preset

    return ExerciseConfig(**config_dict)


def resolve_seed(config: ExerciseConfig, rng: random.Random | None = None) -> ExerciseConfig:
    """Return a config whose run.seed is set, drawing one if absent.

    The drawn seed is what gets reported, so any run can be replayed.
    """
    if config.run.seed is not None:
        return config
    source = rng if rng is not None else random.SystemRandom()
    seed = source.randrange(2**64)
    return config.model_copy(update={"run": config.run.model_copy(update={"seed": seed})})
