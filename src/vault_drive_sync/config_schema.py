"""Unified configuration schema for vault_drive_sync.

Defines Pydantic models for the YAML config structure with dedicated
sections for the Drive connection, sync behaviour, edit history and
logging. Includes an adapter to the flat ``Config`` dataclass.

Usage:
    from vault_drive_sync.config_schema import (
        UnifiedConfig, build_config, to_legacy_config,
    )

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_legacy_config(unified, cli_overrides={"vault_path": "~/notes"})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class DriveConfig(BaseModel):
    """Drive connection settings.

    All fields are optional so env vars and CLI args can supply them at
    runtime instead.
    """

    access_token: str | None = Field(
        default=None, description="OAuth access token"
    )
    root_folder: str = Field(
        default="vault-drive-sync",
        min_length=1,
        description="Drive folder holding the vault",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Vault and transfer settings."""

    vault_path: str | None = Field(default=None, description="Vault directory")
    workspace_folder: str = Field(
        default=".vault_sync",
        min_length=1,
        description="Vault folder holding local sync meta",
    )
    config_dir: str | None = Field(
        default=None, description="Host config folder, never synced"
    )
    exclude_patterns: list[str] = Field(
        default_factory=list,
        description="Globs, or folder prefixes ending in '/'",
    )
    concurrency: int = Field(
        default=5, ge=1, le=50, description="Transfers per batch (1-50)"
    )

    model_config = {"frozen": True}


class HistoryConfig(BaseModel):
    """Edit history settings.

    Attributes:
        enabled: Record local edit history.
        drift_tolerance: Lines a hunk may drift when replayed.
        context_lines: Context lines kept around each hunk.
    """

    enabled: bool = True
    drift_tolerance: int = Field(default=5, ge=0, le=100)
    context_lines: int = Field(default=3, ge=0, le=20)

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or one-line ``json`` records.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = "text"

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has defaults, so ``UnifiedConfig()`` is always valid.
    """

    drive: DriveConfig = Field(default_factory=DriveConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}

    def fallbacks(self) -> dict:
        """Flatten the sections into the ``yaml_fallbacks`` of ``load_config``."""
        return {
            "vault_path": self.sync.vault_path,
            "access_token": self.drive.access_token,
            "root_folder": self.drive.root_folder,
            "workspace_folder": self.sync.workspace_folder,
            "config_dir": self.sync.config_dir,
            "exclude_patterns": list(self.sync.exclude_patterns),
            "concurrency": self.sync.concurrency,
            "drift_tolerance": self.history.drift_tolerance,
            "context_lines": self.history.context_lines,
            "history_enabled": self.history.enabled,
        }


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> Config dataclass
# ---------------------------------------------------------------------------


def to_legacy_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Convert a ``UnifiedConfig`` into the flat ``Config`` dataclass,
    applying CLI overrides on top.

    The precedence applied here is:
        CLI override > unified config value > default

    CLI overrides dict keys: vault_path, access_token, root_folder, debug.

    Returns:
        ``Config`` instance (NOT validated; caller should run
        ``validate_config()`` separately if needed).
    """
    # Import here to avoid circular imports (config.py is the heavier module)
    from .config import Config

    overrides = cli_overrides or {}

    return Config(
        vault_path=overrides.get("vault_path") or unified.sync.vault_path or "",
        access_token=overrides.get("access_token")
        or unified.drive.access_token
        or "",
        root_folder=overrides.get("root_folder") or unified.drive.root_folder,
        workspace_folder=unified.sync.workspace_folder,
        config_dir=unified.sync.config_dir,
        exclude_patterns=list(unified.sync.exclude_patterns),
        concurrency=unified.sync.concurrency,
        drift_tolerance=unified.history.drift_tolerance,
        context_lines=unified.history.context_lines,
        history_enabled=unified.history.enabled,
        debug=overrides.get("debug", False)
        or unified.logging.level.upper() == "DEBUG",
    )
