"""
Configuration Management Module

Loads the project-wide settings from config.yaml and keeps a single parsed
copy for the lifetime of the process. The file holds the settings that vary
per deployment (which named session profile to run, storage location, key
source, log level); the tuning numbers themselves live in the named profiles
of faceauth.profiles.

Usage:
    from faceauth.config import get_config, get_section
    config = get_config()
    db_path = get_section("storage")["db_path"]
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


# Parsed config.yaml (module-level singleton)
_config_instance: Optional[Dict[str, Any]] = None

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_project_root() -> Path:
    """
    Find the project root directory.

    The project root is identified by the presence of config.yaml. The search
    starts at this package's directory and walks up the tree.

    Returns:
        Path: The absolute path to the project root directory.

    Raises:
        FileNotFoundError: If config.yaml cannot be found in any parent directory.
    """
    current_dir = Path(__file__).resolve().parent

    while current_dir != current_dir.parent:
        if (current_dir / "config.yaml").exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError(
        "Could not find config.yaml in any parent directory. "
        "Make sure you're running from within the project directory."
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Optional path to the config file.
                     If not provided, uses config.yaml in the project root.

    Returns:
        Dict containing all configuration values (empty for an empty file).

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the config file contains invalid YAML.
    """
    if config_path is None:
        path = get_project_root() / "config.yaml"
    else:
        path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    return config or {}


def get_config(reload: bool = False) -> Dict[str, Any]:
    """
    Get the configuration singleton.

    Args:
        reload: If True, forces reloading the configuration from disk.

    Returns:
        Dict containing all configuration values.

    Example:
        config = get_config()
        profile_name = config["session"]["profile"]
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = load_config()

    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Get a top-level section from the configuration.

    Args:
        section_name: Name of the configuration section
                      (e.g., "session", "storage", "crypto")

    Returns:
        Dict containing the section's configuration values.

    Raises:
        KeyError: If the section doesn't exist in the configuration.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"Configuration section '{section_name}' not found. "
            f"Available sections: {list(config.keys())}"
        )

    return config[section_name] or {}


def get_session_config() -> Dict[str, Any]:
    """Get session profile selection and overrides."""
    return get_section("session")


def get_storage_config() -> Dict[str, Any]:
    """Get identity store configuration."""
    return get_section("storage")


def get_crypto_config() -> Dict[str, Any]:
    """Get descriptor encryption configuration."""
    return get_section("crypto")


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration."""
    return get_section("logging")


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for applications embedding the orchestrator.

    Args:
        level: Log level name. Falls back to logging.level in config.yaml,
               then INFO when no config file is available.
    """
    if level is None:
        try:
            level = get_logging_config().get("level", "INFO")
        except (FileNotFoundError, KeyError):
            level = "INFO"

    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)


if __name__ == "__main__":
    print("Testing configuration loader...")

    config = get_config()
    print(f"Successfully loaded config with sections: {list(config.keys())}")
    print(f"Session profile: {get_session_config().get('profile')}")
