"""
Hierarchical configuration loader for vault_drive_sync.

Provides convention-based config file discovery, YAML !include support,
env var interpolation, and hierarchical merge with "project wins" semantics.

Usage:
    from vault_drive_sync.config_loader import load_hierarchical_config

    config = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "VAULT_SYNC_CONFIG"
PROJECT_CONFIG_DIR = ".vault_sync"

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` patterns with env values.

    * ``${VAR}`` becomes ``os.environ.get(VAR, "")``.
    * ``${VAR:-default}`` uses *default* when VAR is unset or empty.
    * A literal ``${`` with no closing ``}`` is left untouched.
    """

    def _replace(match: re.Match) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val:
            return env_val
        return match.group(2) or ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. YAML !include support
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader subclass with ``!include``; the global loader is untouched.

    An include stack is kept per load to detect circular includes.
    """


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    """Handle ``!include path/to/file.yml``, relative to the including file."""
    include_path_str: str = loader.construct_scalar(node)
    if os.path.isabs(include_path_str):
        include_path = Path(include_path_str)
    else:
        include_path = Path(loader.name).resolve().parent / include_path_str
    include_path = include_path.resolve()

    include_stack: list[Path] = getattr(loader, "_include_stack", [])
    if include_path in include_stack:
        chain = " -> ".join(str(p) for p in [*include_stack, include_path])
        raise ValueError(f"Circular include detected: {chain}")

    if not include_path.exists():
        raise FileNotFoundError(
            f"Include file not found: {include_path} "
            f"(referenced from {Path(loader.name).resolve()})"
        )

    return _load_yaml_with_includes(
        include_path, _include_stack=[*include_stack, include_path]
    )


ConfigLoader.add_constructor("!include", _include_constructor)


def _load_yaml_with_includes(
    path: Path,
    *,
    _include_stack: list[Path] | None = None,
) -> Any:
    path = path.resolve()
    if _include_stack is None:
        _include_stack = [path]

    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_stack = _include_stack  # type: ignore[attr-defined]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# 3. Convention-based file discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config file paths in precedence order (highest first).

    Search order:
        1. ``VAULT_SYNC_CONFIG`` env var (explicit single path)
        2. ``.vault_sync/config.yml`` in CWD (project-level)
        3. ``.vault_sync/config.yaml`` in CWD (alternate extension)
        4. ``~/.config/vault_sync/config.yml`` (XDG global)

    Only paths that exist on disk are returned.
    """
    candidates: list[Path] = []

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    cwd = Path.cwd()
    candidates.append(cwd / PROJECT_CONFIG_DIR / "config.yml")
    candidates.append(cwd / PROJECT_CONFIG_DIR / "config.yaml")
    candidates.append(Path.home() / ".config" / "vault_sync" / "config.yml")

    return [p for p in candidates if p.exists()]


_STARTER_CONFIG = """\
# vault-drive-sync configuration
#
# Secrets are best kept in the environment (or a .env file):
#   VAULT_SYNC_PATH, VAULT_SYNC_ACCESS_TOKEN
#
# drive:
#   access_token: ${VAULT_SYNC_ACCESS_TOKEN}
#   root_folder: vault-drive-sync
#
# sync:
#   vault_path: ~/notes
#   workspace_folder: .vault_sync
#   config_dir: .obsidian
#   exclude_patterns:
#     - "drafts/"
#     - "*.tmp"
#   concurrency: 5
#
# history:
#   enabled: true
#   drift_tolerance: 5
#   context_lines: 3
#
# logging:
#   level: INFO
#   file: null
#   format: text
"""


def resolve_config_path() -> Path:
    """Return the active config file, or the default project-level path.

    Does NOT create the file; use ``ensure_config()`` for that.
    """
    existing = discover_config_files()
    if existing:
        return existing[0]
    return Path.cwd() / PROJECT_CONFIG_DIR / "config.yml"


def ensure_config(target: Path | None = None) -> Path:
    """Ensure a config file exists, writing a commented starter if needed.

    Args:
        target: Explicit path to create. If ``None``, uses
            ``resolve_config_path()``.

    Returns:
        Path to the config file (existing or newly created).
    """
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    config_path = target or resolve_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)
    return config_path


# ---------------------------------------------------------------------------
# 4. Hierarchical merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load and merge all discovered config files.

    Files are loaded from lowest precedence to highest and each file's
    top-level keys **replace** (not deep-merge) earlier ones. Env var
    interpolation runs after the merge.

    Returns an empty dict when no config files exist (zero-config).
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = _load_yaml_with_includes(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_recursive(merged)
