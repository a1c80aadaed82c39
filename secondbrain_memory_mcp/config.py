"""
Configuration for SecondBrain Memory System
Copyright 2025 Jurden Bruce

All settings come from environment variables with sensible defaults.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the runtime configuration dict

    Args:
        overrides: Optional values that take precedence over the environment

    Returns:
        Configuration dict shared by the storage, embedding and ranking layers
    """
    data_dir = Path(os.getenv("SB_DATA_DIR", Path.cwd() / "memory_repos" / "default"))

    config = {
        "data_dir": data_dir,
        "db_name": os.getenv("SB_DB_NAME", "secondbrain.db"),
        "embedding_provider": os.getenv("EMBEDDING_PROVIDER", "openai").lower(),
        "openai_api_key": os.getenv("OPENAI_API_KEY", ""),
        "openai_base_url": os.getenv("OPENAI_BASE_URL") or None,
        "openai_model": os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
        "local_model": os.getenv("LOCAL_EMBEDDING_MODEL", "all-mpnet-base-v2"),
        "local_device": os.getenv("LOCAL_EMBEDDING_DEVICE", "cpu"),
        "embedding_max_retries": int(os.getenv("EMBEDDING_MAX_RETRIES", 3)),
        "embedding_backoff_initial": float(os.getenv("EMBEDDING_BACKOFF_INITIAL", 1.0)),
        "embedding_backoff_max": float(os.getenv("EMBEDDING_BACKOFF_MAX", 30.0)),
        "embedding_backoff_factor": float(os.getenv("EMBEDDING_BACKOFF_FACTOR", 2.0)),
        "cache_maxsize": int(os.getenv("CACHE_MAXSIZE", 1000)),
        "lazy_load": _env_bool("SB_LAZY_LOAD", True),
        "log_level": os.getenv("LOG_LEVEL", "INFO").upper(),
    }

    if overrides:
        config.update(overrides)
    config["data_dir"] = Path(config["data_dir"])
    return config


def db_path(config: Dict[str, Any]) -> Path:
    """Full path of the SQLite database file"""
    return Path(config["data_dir"]) / config["db_name"]
