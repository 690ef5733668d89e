"""Path rules: sync exclusions, MIME types and binary detection."""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Callable, Iterable

SYNC_META_FILE_NAME = "_sync-meta.json"

SYNC_EXCLUDED_FILE_NAMES = frozenset(
    {SYNC_META_FILE_NAME, "_encrypted-auth.json", "settings.json"}
)
SYNC_EXCLUDED_PREFIXES = (
    "history/",
    "trash/",
    "sync_conflicts/",
    "__TEMP__/",
    "plugins/",
    ".trash/",
    "node_modules/",
)

ExcludePredicate = Callable[[str], bool]


def is_sync_excluded_path(
    path: str,
    exclude_patterns: Iterable[str] = (),
    config_dir: str | None = None,
    workspace_folder: str | None = None,
) -> bool:
    """Return True when ``path`` must never be synced.

    User patterns ending in ``/`` exclude a folder prefix; other patterns
    are globs (``*``, ``?``) matched against the full path or the basename.
    """
    normalized = path.lstrip("/")
    if normalized in SYNC_EXCLUDED_FILE_NAMES:
        return True
    if normalized.startswith(SYNC_EXCLUDED_PREFIXES):
        return True
    for folder in (config_dir, workspace_folder):
        if folder and (
            normalized == folder or normalized.startswith(folder + "/")
        ):
            return True

    basename = normalized.rsplit("/", 1)[-1]
    for pattern in exclude_patterns:
        pattern = pattern.strip()
        if not pattern:
            continue
        if pattern.endswith("/"):
            if normalized.startswith(pattern) or normalized.startswith(
                pattern[:-1]
            ):
                return True
        elif fnmatchcase(normalized, pattern) or fnmatchcase(
            basename, pattern
        ):
            return True
    return False


def make_exclude_predicate(
    exclude_patterns: Iterable[str] = (),
    config_dir: str | None = None,
    workspace_folder: str | None = None,
) -> ExcludePredicate:
    """Bind the exclusion rules into a single-argument predicate."""
    patterns = tuple(exclude_patterns)

    def _excluded(path: str) -> bool:
        return is_sync_excluded_path(
            path, patterns, config_dir, workspace_folder
        )

    return _excluded


# ---------------------------------------------------------------------------
# MIME types
# ---------------------------------------------------------------------------

_MIME_TYPES = {
    # Text
    "md": "text/markdown",
    "txt": "text/plain",
    "html": "text/html",
    "htm": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "ts": "application/typescript",
    "json": "application/json",
    "xml": "application/xml",
    "yaml": "text/yaml",
    "yml": "text/yaml",
    "csv": "text/csv",
    "svg": "image/svg+xml",
    # Images
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "ico": "image/x-icon",
    # Documents
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    # Archives
    "zip": "application/zip",
    "gz": "application/gzip",
    "tar": "application/x-tar",
    # Audio/Video
    "mp3": "audio/mpeg",
    "mp4": "video/mp4",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "webm": "video/webm",
    # Fonts
    "woff": "font/woff",
    "woff2": "font/woff2",
    "ttf": "font/ttf",
    "otf": "font/otf",
}

_BINARY_EXTENSIONS = frozenset(
    {
        "png", "jpg", "jpeg", "gif", "webp", "bmp", "ico", "svg",
        "pdf", "doc", "docx", "xls", "xlsx", "pptx",
        "zip", "gz", "tar", "7z", "rar",
        "mp3", "mp4", "wav", "ogg", "webm",
        "woff", "woff2", "ttf", "otf",
        "exe", "dll", "so", "dylib",
    }
)  # fmt: skip

_BINARY_APPLICATION_TYPES = frozenset(
    {
        "application/pdf",
        "application/zip",
        "application/gzip",
        "application/x-tar",
        "application/x-gzip",
        "application/x-bzip2",
        "application/x-7z-compressed",
        "application/x-rar-compressed",
        "application/octet-stream",
        "application/wasm",
    }
)

_BINARY_APPLICATION_PREFIXES = (
    "application/vnd.openxmlformats-",
    "application/vnd.ms-",
    "application/vnd.oasis.opendocument.",
)


def _extension(path: str) -> str:
    return path.lower().rsplit(".", 1)[-1]


def get_mime_type(path: str) -> str:
    return _MIME_TYPES.get(_extension(path), "application/octet-stream")


def is_binary_extension(path: str) -> bool:
    """True when the file is transferred as raw bytes rather than text."""
    return _extension(path) in _BINARY_EXTENSIONS


def is_binary_mime_type(mime_type: str | None) -> bool:
    if not mime_type:
        return False
    if mime_type.startswith(("image/", "video/", "audio/", "font/")):
        return True
    if mime_type in _BINARY_APPLICATION_TYPES:
        return True
    return mime_type.startswith(_BINARY_APPLICATION_PREFIXES)


def looks_like_binary(content: str) -> bool:
    """Heuristic: at least 10% control characters in the first 512 chars."""
    sample = content[:512]
    if not sample:
        return False
    control = sum(
        1 for ch in sample if ord(ch) < 32 and ch not in "\t\n\r"
    )
    return control / len(sample) >= 0.1
