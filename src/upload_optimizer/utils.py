"""
Utility functions for file names, sizes and logging context.

This module provides helper functions for:
- Normalizing and validating file extensions before they reach a shell
- Ensuring directory creation
- Human readable byte sizes for log lines
- Prefixed loggers that carry job or file identity across threads
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, MutableMapping

# Extensions are interpolated into shell commands and temp file names
SAFE_EXTENSION_PATTERN = re.compile(r"^[a-z0-9]+$")

_SIZE_UNITS = [("TB", 1 << 40), ("GB", 1 << 30), ("MB", 1 << 20), ("KB", 1 << 10)]


def normalize_extension(extension: str) -> str:
    """
    Lowercase an extension and strip its leading dot.

    Example:
        >>> normalize_extension(".HEIC")
        "heic"
    """
    return extension.lower().removeprefix(".")


def is_safe_extension(extension: str) -> bool:
    """Check that a normalized extension only holds lowercase letters and digits."""
    return bool(SAFE_EXTENSION_PATTERN.match(extension))


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and normalized extension.

    Example:
        >>> split_extension("/path/to/IMG_0001.HEIC")
        ("IMG_0001", "heic")
    """
    path = Path(filename)
    return path.stem, normalize_extension(path.suffix)


def trim_suffix_case_insensitive(value: str, suffix: str) -> str:
    if suffix and value.lower().endswith(suffix.lower()):
        return value[: len(value) - len(suffix)]
    return value


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def human_readable_size(size: int) -> str:
    """
    Format a byte count for log output.

    Example:
        >>> human_readable_size(1536)
        "1.50 KB"
    """
    for unit, threshold in _SIZE_UNITS:
        if size >= threshold:
            return f"{size / threshold:.2f} {unit}"
    return f"{size} bytes"


class PrefixedLogger(logging.LoggerAdapter):
    """
    Logger adapter that prepends an immutable prefix to every message.

    Prefixes accumulate through ``child`` so a job started by a request keeps
    the request's context, e.g. ``"client with broken redirects: job 1234: "``.
    The adapter is passed explicitly to whatever runs on behalf of the job.
    """

    def __init__(self, logger: logging.Logger, prefix: str = "") -> None:
        super().__init__(logger, {"prefix": prefix})
        self.prefix = prefix

    def child(self, prefix: str) -> "PrefixedLogger":
        return PrefixedLogger(self.logger, self.prefix + prefix)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"{self.prefix}{msg}", kwargs
