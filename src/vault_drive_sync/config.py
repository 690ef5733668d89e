"""Runtime configuration for vault-drive-sync.

Reads vault and Drive settings from CLI args, environment variables,
.env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    VAULT_SYNC_PATH: Vault directory (required)
    VAULT_SYNC_ACCESS_TOKEN: Drive OAuth access token (required)
    VAULT_SYNC_ROOT_FOLDER: Drive folder holding the vault (default: vault-drive-sync)
    VAULT_SYNC_WORKSPACE_FOLDER: Vault folder for local sync meta (default: .vault_sync)
    VAULT_SYNC_CONFIG_DIR: Host config folder never synced (optional)
    VAULT_SYNC_EXCLUDE: Comma separated exclude patterns (optional)
    VAULT_SYNC_CONCURRENCY: Transfers per batch (optional, default: 5)
    VAULT_SYNC_DRIFT_TOLERANCE: Patch drift tolerance in lines (optional, default: 5)
    VAULT_SYNC_CONTEXT_LINES: History diff context lines (optional, default: 3)
    VAULT_SYNC_HISTORY: Record local edit history (optional, default: true)
    VAULT_SYNC_DEBUG: Enable debug logging (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from vault_drive_sync.sync.engine import SyncSettings

logger = logging.getLogger(__name__)

DEFAULT_ROOT_FOLDER = "vault-drive-sync"
DEFAULT_WORKSPACE_FOLDER = ".vault_sync"

# (env var, yaml key, default, min, max)
_INT_FIELDS = (
    ("VAULT_SYNC_CONCURRENCY", "concurrency", 5, 1, 50),
    ("VAULT_SYNC_DRIFT_TOLERANCE", "drift_tolerance", 5, 0, 100),
    ("VAULT_SYNC_CONTEXT_LINES", "context_lines", 3, 0, 20),
)


@dataclass
class Config:
    vault_path: str
    access_token: str
    root_folder: str = DEFAULT_ROOT_FOLDER
    workspace_folder: str = DEFAULT_WORKSPACE_FOLDER
    config_dir: str | None = None
    exclude_patterns: list[str] = field(default_factory=list)
    concurrency: int = 5
    drift_tolerance: int = 5
    context_lines: int = 3
    history_enabled: bool = True
    debug: bool = False


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the vault is not a directory, the token is empty, or
            a folder name is unusable.
    """
    config.vault_path = config.vault_path.strip()
    vault = Path(config.vault_path).expanduser()
    if not vault.is_dir():
        raise ValueError(
            f"Invalid vault path '{config.vault_path}': not a directory"
        )
    config.vault_path = str(vault)

    if not config.access_token.strip():
        raise ValueError(
            "Drive access token cannot be empty. "
            "Set VAULT_SYNC_ACCESS_TOKEN environment variable."
        )

    config.root_folder = config.root_folder.strip()
    if not config.root_folder or "/" in config.root_folder:
        raise ValueError(
            f"Invalid root folder '{config.root_folder}': "
            "must be a non-empty name without '/'"
        )

    config.workspace_folder = config.workspace_folder.strip().strip("/")
    if not config.workspace_folder or ".." in config.workspace_folder.split("/"):
        raise ValueError(
            f"Invalid workspace folder '{config.workspace_folder}'"
        )

    if not config.history_enabled:
        logger.debug("Local edit history disabled")


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _resolve_int(
    env_key: str, yaml_key: str, default: int, low: int, high: int, fb: dict
) -> int:
    raw = os.getenv(env_key)
    source = env_key
    if raw is None:
        if yaml_key not in fb:
            return default
        raw = str(fb[yaml_key])
        source = yaml_key
    message = f"Invalid {source} '{raw}': must be a number between {low} and {high}"
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(message) from None
    if not (low <= value <= high):
        raise ValueError(message)
    return value


def _split_patterns(raw: str) -> list[str]:
    return [p.strip() for p in raw.split(",") if p.strip()]


def load_config(
    vault_path: str | None = None,
    access_token: str | None = None,
    root_folder: str | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        vault_path: Override vault directory.
        access_token: Override Drive access token.
        root_folder: Override Drive root folder name.
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flattened ``drive``/``sync``/``history`` values from
            the YAML config file.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If the vault path or access token is missing after
            checking all sources, or a value is out of range.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: CLI > env > YAML > error/default ---

    final_vault = vault_path or os.getenv("VAULT_SYNC_PATH") or fb.get("vault_path")
    if not final_vault:
        raise ValueError(
            "Vault path not found. Set VAULT_SYNC_PATH environment variable, "
            "pass --vault CLI argument, or add 'vault_path' to config.yml."
        )

    final_token = (
        access_token
        or os.getenv("VAULT_SYNC_ACCESS_TOKEN")
        or fb.get("access_token")
    )
    if not final_token:
        raise ValueError(
            "Drive access token not found. Set VAULT_SYNC_ACCESS_TOKEN "
            "environment variable, pass --token CLI argument, or add "
            "'access_token' to config.yml."
        )

    final_root = (
        root_folder
        or os.getenv("VAULT_SYNC_ROOT_FOLDER")
        or fb.get("root_folder")
        or DEFAULT_ROOT_FOLDER
    )
    final_workspace = (
        os.getenv("VAULT_SYNC_WORKSPACE_FOLDER")
        or fb.get("workspace_folder")
        or DEFAULT_WORKSPACE_FOLDER
    )
    final_config_dir = os.getenv("VAULT_SYNC_CONFIG_DIR") or fb.get("config_dir")

    exclude_raw = os.getenv("VAULT_SYNC_EXCLUDE")
    if exclude_raw is not None:
        exclude = _split_patterns(exclude_raw)
    else:
        exclude = [str(p) for p in fb.get("exclude_patterns") or []]

    # --- Boolean fields: CLI > env > YAML > default ---

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("VAULT_SYNC_DEBUG")
        final_debug = (
            env_debug if env_debug is not None else bool(fb.get("debug", False))
        )

    env_history = _get_bool_env("VAULT_SYNC_HISTORY")
    final_history = (
        env_history
        if env_history is not None
        else bool(fb.get("history_enabled", True))
    )

    # --- Numeric fields: env > YAML > default ---

    numbers = {
        yaml_key: _resolve_int(env_key, yaml_key, default, low, high, fb)
        for env_key, yaml_key, default, low, high in _INT_FIELDS
    }

    config = Config(
        vault_path=final_vault,
        access_token=final_token.strip(),
        root_folder=final_root,
        workspace_folder=final_workspace,
        config_dir=final_config_dir,
        exclude_patterns=exclude,
        history_enabled=final_history,
        debug=final_debug,
        **numbers,
    )

    validate_config(config)

    return config


def to_sync_settings(config: Config) -> SyncSettings:
    """Engine tunables carried by a validated ``Config``."""
    return SyncSettings(
        root_folder_name=config.root_folder,
        workspace_folder=config.workspace_folder,
        config_dir=config.config_dir,
        exclude_patterns=tuple(config.exclude_patterns),
        concurrency=config.concurrency,
        drift_tolerance=config.drift_tolerance,
        context_lines=config.context_lines,
        history_enabled=config.history_enabled,
    )
