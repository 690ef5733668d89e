"""Hunk-based patch engine used by sync history and edit history.

Diffs are plain text in a restricted unified-diff form: hunk headers
``@@ -oldStart,oldLen +newStart,newLen @@`` followed by body lines prefixed
``-``, ``+`` or a space. Content is treated as ``content.split("\\n")`` so a
trailing newline is an empty last line, which keeps round trips exact.

Application is content-matching rather than offset-exact: each hunk's
old-side lines are searched within a window of ``drift_tolerance`` lines
around the declared position, and hunks are applied bottom-up so earlier
splices never move not-yet-applied targets.
"""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass
from typing import NamedTuple

from vault_drive_sync.errors import PatchError
from vault_drive_sync.sync.models import DiffStats

logger = logging.getLogger(__name__)

DEFAULT_DRIFT_TOLERANCE = 5
DEFAULT_CONTEXT_LINES = 3

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d*))? \+(\d+)(?:,(\d*))? @@(.*)$")


@dataclass(frozen=True)
class ParsedHunk:
    """One hunk ready for application.

    Attributes:
        start_line: 0-based index where ``search_lines`` is expected.
        search_lines: Old-side lines (removals and context).
        replace_lines: New-side lines (additions and context).
    """

    start_line: int
    search_lines: tuple[str, ...]
    replace_lines: tuple[str, ...]


class ApplyResult(NamedTuple):
    content: str
    unmatched: int


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_hunks(diff: str) -> list[ParsedHunk]:
    """Split a diff into hunks.

    Lines before the first header and lines without a known prefix
    (e.g. ``\\ No newline at end of file``) are ignored.
    """
    hunks: list[ParsedHunk] = []
    start: int | None = None
    search: list[str] = []
    replace: list[str] = []

    def _flush() -> None:
        if start is not None:
            hunks.append(ParsedHunk(start, tuple(search), tuple(replace)))

    for line in diff.split("\n"):
        header = _HUNK_HEADER.match(line)
        if header:
            _flush()
            old_start = int(header.group(1))
            old_len = int(header.group(2)) if header.group(2) else 1
            # Empty old side: unified diffs name the line *after which* to insert.
            start = old_start if old_len == 0 else old_start - 1
            search, replace = [], []
            continue
        if start is None or not line:
            continue
        match line[0]:
            case "-":
                search.append(line[1:])
            case "+":
                replace.append(line[1:])
            case " ":
                search.append(line[1:])
                replace.append(line[1:])
    _flush()
    return hunks


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def _locate(
    lines: list[str], hunk: ParsedHunk, drift_tolerance: int
) -> int | None:
    """Return the index where the hunk's search lines match, or None."""
    size = len(hunk.search_lines)
    lo = max(0, hunk.start_line - drift_tolerance)
    hi = min(len(lines) - size, hunk.start_line + drift_tolerance)
    for idx in range(lo, hi + 1):
        if tuple(lines[idx : idx + size]) == hunk.search_lines:
            return idx
    return None


def apply_hunks(
    content: str,
    hunks: list[ParsedHunk],
    drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE,
) -> ApplyResult:
    """Apply hunks bottom-up, counting the ones that could not be located.

    Pure insertions (no search lines) go in at their declared line, clamped
    to the document bounds.
    """
    lines = content.split("\n")
    unmatched = 0

    for hunk in reversed(hunks):
        if not hunk.search_lines:
            at = min(max(hunk.start_line, 0), len(lines))
        else:
            at = _locate(lines, hunk, drift_tolerance)
            if at is None:
                unmatched += 1
                logger.warning(
                    "Hunk did not match near line %d: %r",
                    hunk.start_line + 1,
                    hunk.search_lines[:3],
                )
                continue
        lines[at : at + len(hunk.search_lines)] = hunk.replace_lines

    return ApplyResult("\n".join(lines), unmatched)


def apply_diff(
    content: str,
    diff: str,
    *,
    strict: bool = False,
    drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE,
) -> str:
    """Apply a diff in the direction it was written.

    Args:
        content: Text to patch.
        diff: Diff whose old side should be found in ``content``.
        strict: Raise when any hunk stays unmatched.
        drift_tolerance: Allowed line offset when locating hunks.

    Returns:
        Patched text (best effort unless ``strict``).

    Raises:
        PatchError: In strict mode, once all hunks were attempted and at
            least one did not match.
    """
    result = apply_hunks(content, parse_hunks(diff), drift_tolerance)
    if strict and result.unmatched:
        raise PatchError(result.unmatched)
    return result.content


def invert_diff(diff: str) -> str:
    """Turn an old->new diff into new->old.

    Swaps ``+``/``-`` body prefixes and the two ranges of every hunk header.
    Context lines and trailing header text are kept as they are.
    """
    inverted: list[str] = []
    for line in diff.split("\n"):
        header = _HUNK_HEADER.match(line)
        if header:
            old_start, old_len, new_start, new_len, tail = header.groups()
            old_part = f"{old_start},{old_len}" if old_len else old_start
            new_part = f"{new_start},{new_len}" if new_len else new_start
            inverted.append(f"@@ -{new_part} +{old_part} @@{tail}")
        elif line.startswith("+"):
            inverted.append("-" + line[1:])
        elif line.startswith("-"):
            inverted.append("+" + line[1:])
        else:
            inverted.append(line)
    return "\n".join(inverted)


def reverse_apply_diff(
    content: str,
    diff: str,
    *,
    strict: bool = False,
    drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE,
) -> str:
    """Undo an old->new diff on content that currently holds the new side."""
    return apply_diff(
        content,
        invert_diff(diff),
        strict=strict,
        drift_tolerance=drift_tolerance,
    )


# ---------------------------------------------------------------------------
# Diff creation
# ---------------------------------------------------------------------------


def create_diff(
    original: str,
    modified: str,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> tuple[str, DiffStats]:
    """Build a header-less unified diff from ``original`` to ``modified``.

    Returns:
        Tuple of (diff text, addition/deletion counts). Identical inputs
        give an empty diff with zero stats.
    """
    body: list[str] = []
    additions = deletions = 0
    in_hunks = False
    for line in difflib.unified_diff(
        original.split("\n"),
        modified.split("\n"),
        n=context_lines,
        lineterm="",
    ):
        # Skip the ---/+++ file header; it precedes the first hunk.
        if not in_hunks:
            if not line.startswith("@@"):
                continue
            in_hunks = True
        if not line.startswith("@@"):
            if line.startswith("+"):
                additions += 1
            elif line.startswith("-"):
                deletions += 1
        body.append(line)
    return "\n".join(body), DiffStats(additions=additions, deletions=deletions)
