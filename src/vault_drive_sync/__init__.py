"""Two-way Google Drive sync for note vaults.

Detects changes with MD5 checksums against a recorded common ancestor,
classifies every file into push/pull/conflict buckets, and keeps a
diff-based edit history that can reconstruct earlier file states.
"""

__version__ = "0.3.0"
