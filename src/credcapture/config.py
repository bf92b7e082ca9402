"""
Target site configuration management.

Manages a JSON config file at ~/.credcapture/config.json that stores:
  - Sites: named target site profiles (login URL, domain, tag prefix, and any
    heuristic overrides), merged over the built-in profiles below
  - Default site: the name to use when --site is not specified

Config file format:
    {
        "default_site": "depop",
        "sites": {
            "example": {
                "login_url": "https://www.example.com/login",
                "domain": "example.com",
                "tag_prefix": "EXAMPLE_USER:"
            }
        }
    }
"""

import json
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import ValidationError as ModelValidationError

from .schemas import SiteConfig

# Config file location, alongside the browser profile in ~/.credcapture/
CONFIG_PATH = Path.home() / ".credcapture" / "config.json"

# Sites usable without any configuration
BUILTIN_SITES = {
    "depop": {
        "login_url": "https://www.depop.com/login/",
        "domain": "depop.com",
        "tag_prefix": "DEPOP_USER:",
    },
}

# Default config when no config file exists or it's corrupted
DEFAULT_CONFIG = {
    "default_site": "depop",
    "sites": {},
}


def load_config() -> dict:
    """Load the configuration from disk.

    Returns a copy of DEFAULT_CONFIG if the file doesn't exist or can't be parsed.

    Returns:
        dict: The configuration dictionary with "default_site" and "sites" keys.
    """
    if not CONFIG_PATH.exists():
        return json.loads(json.dumps(DEFAULT_CONFIG))
    try:
        config = json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config {CONFIG_PATH}: {e}")
        return json.loads(json.dumps(DEFAULT_CONFIG))
    if not isinstance(config, dict):
        return json.loads(json.dumps(DEFAULT_CONFIG))
    config.setdefault("default_site", DEFAULT_CONFIG["default_site"])
    config.setdefault("sites", {})
    return config


def save_config(config: dict) -> None:
    """Write the configuration to disk as pretty-printed UTF-8 JSON.

    Creates the parent directory (~/.credcapture/) if it doesn't exist.
    """
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_PATH.write_text(
        json.dumps(config, indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )


def available_sites(config: Optional[dict] = None) -> dict:
    """All site profiles by name: built-ins overlaid with the user's entries."""
    if config is None:
        config = load_config()
    sites = {name: dict(entry) for name, entry in BUILTIN_SITES.items()}
    for name, entry in config.get("sites", {}).items():
        sites[name] = {**sites.get(name, {}), **entry}
    return sites


def resolve_site(name: Optional[str] = None, config: Optional[dict] = None) -> Optional[SiteConfig]:
    """Resolve a site name to its SiteConfig.

    Resolution priority:
      1. If name is given, look it up among user and built-in sites.
      2. If name is None, use the configured default site.

    Args:
        name: A site name (e.g., "depop"), or None for the default.
        config: Optional pre-loaded config dict. If None, loads from disk.

    Returns:
        SiteConfig | None: The site, or None if the name is unknown or its
                           entry is incomplete.
    """
    if config is None:
        config = load_config()

    if name is None:
        name = config.get("default_site")
        if not name:
            return None

    entry = available_sites(config).get(name)
    if entry is None:
        return None

    try:
        return SiteConfig(name=name, **entry)
    except ModelValidationError as e:
        logger.warning(f"Site '{name}' is misconfigured: {e}")
        return None
