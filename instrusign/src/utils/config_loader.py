import os
from pathlib import Path
import toml
from typing import Dict, Any


def get_home_dir() -> Path:
    """Return the instrusign state directory (config and asset cache)."""
    env_home = os.environ.get("INSTRUSIGN_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".instrusign"


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_home_dir() / "config.toml"


def load_config(config_path: Path = None) -> Dict[str, Any]:
    """Load configuration from TOML file."""
    config_path = config_path or get_config_path()
    if not config_path.exists():
        return {}

    try:
        return toml.load(config_path)
    except (toml.TomlDecodeError, OSError) as e:
        raise ValueError(f"Failed to load config {config_path}: {e}")


def get_signing_section(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return the [signing] table, with its profile/certificate maps."""
    signing = dict(config.get("signing", {}))
    signing.setdefault("profiles", {})
    signing.setdefault("certificates", {})
    return signing
