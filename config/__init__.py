# PATH: config/__init__.py
"""
Configuration loading utilities for LIQBOT.
"""

from pathlib import Path
from typing import Any, Dict, Union

import yaml


CONFIG_DIR = Path(__file__).parent
DEFAULT_CONFIG_FILE = "bot.yaml"


def load_yaml(filename: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML configuration file.

    Args:
        filename: Name of file in config directory, or a path to one

    Returns:
        Parsed YAML as dict
    """
    filepath = Path(filename)
    if not filepath.is_absolute() and not filepath.exists():
        filepath = CONFIG_DIR / filename
    if not filepath.exists():
        raise FileNotFoundError(f"Config file not found: {filepath}")

    with open(filepath, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_bot_yaml() -> Dict[str, Any]:
    """Load the bundled bot configuration."""
    return load_yaml(DEFAULT_CONFIG_FILE)
