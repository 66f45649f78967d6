"""
Reading config/openjournal.yaml.

Relative paths are taken from the repository root so ``openjournal`` works
from any working directory. ``${VAR}`` and ``$VAR`` references are expanded
from the environment before parsing; unset variables stay literal and are
caught later by validation.
"""

import os
from pathlib import Path
from typing import Any, Dict

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def resolve_config_path(path: str) -> str:
    """Absolute form of ``path``; relative paths are anchored at the project root."""
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate)
    return str(PROJECT_ROOT / candidate)


def load_yaml_with_env_expansion(path: str) -> Dict[str, Any]:
    """
    Parse the YAML file at ``path`` after environment expansion.

    An empty file yields ``{}``.

    Raises:
        FileNotFoundError: the file does not exist
        yaml.YAMLError: the text does not parse, or its root is not a mapping
    """
    config_file = Path(path)
    if not config_file.is_file():
        raise FileNotFoundError(f"OpenJournal config not found at: {path}")

    text = os.path.expandvars(config_file.read_text(encoding="utf-8"))
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing {config_file.name}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"{config_file.name} must contain a mapping at the top level, got {type(data).__name__}")
    return data
