"""
Configuration for the ledgerlock core.

Loaded from <home>/config/config.yaml, with a couple of environment
overrides for the remote endpoints. Missing or broken files fall back
to defaults so the ledger always opens offline.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger("ledgerlock.config")

CONFIG_RELPATH = Path("config") / "config.yaml"


class LedgerConfig(BaseModel):
    """Tunable settings for credentials, sessions, linking and sync."""

    api_url: str = Field(default="http://localhost:8787", description="Coordinator / sync server base URL")
    share_base_url: str = Field(default="https://ledgerlock.app", description="Origin used in share links")
    registration_timeout: float = Field(default=5.0, gt=0)
    sync_timeout: float = Field(default=15.0, gt=0)
    push_debounce_seconds: float = Field(default=3.0, ge=0)
    pbkdf2_iterations: int = Field(default=100_000, ge=1)
    min_pin_length: int = Field(default=6, ge=1)
    session_ttl_seconds: int = Field(default=900, gt=0)
    failed_attempt_warn_every: int = Field(default=3, ge=1)
    biometric_timeout: float = Field(default=60.0, gt=0)


def load_config(home: Path) -> LedgerConfig:
    """Load configuration for a ledger home.

    Args:
        home: Ledger home directory (~/.ledgerlock).

    Returns:
        LedgerConfig with file values and environment overrides applied.
    """
    data: dict = {}
    config_file = home / CONFIG_RELPATH
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except (yaml.YAMLError, OSError) as exc:
            logger.warning("Failed to read config: %s — using defaults", exc)
            data = {}

    env_api = os.environ.get("LEDGERLOCK_API_URL")
    if env_api:
        data["api_url"] = env_api
    env_share = os.environ.get("LEDGERLOCK_SHARE_URL")
    if env_share:
        data["share_base_url"] = env_share

    try:
        return LedgerConfig(**data)
    except ValueError as exc:
        logger.warning("Invalid config values: %s — using defaults", exc)
        return LedgerConfig()


def save_config(home: Path, config: LedgerConfig) -> Path:
    """Persist configuration to <home>/config/config.yaml."""
    config_file = home / CONFIG_RELPATH
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )
    return config_file
