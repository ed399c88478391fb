"""
Backup file name versioning.

Backups of the same logical file share a base name and carry an optional
``__<version>`` tag before the extension, e.g. ``report.txt``,
``report__1.txt``, ``report__2.txt``.
"""
from __future__ import annotations

import os
import re
from typing import NamedTuple, Optional, Tuple


VERSION_SEPARATOR = "__"
_VERSION_PATTERN = re.compile(r"(.+)__(\d+)", re.IGNORECASE)


class NameVersion(NamedTuple):
    base_name: str
    version: int


def split_extension(filename: str) -> Tuple[str, str]:
    """Return ``(stem, extension)`` for the last path component of ``filename``."""
    return os.path.splitext(os.path.basename(filename))


def parse(filename: str, fallback_to_zero: bool = True) -> Optional[NameVersion]:
    stem, _ = split_extension(filename)
    match = _VERSION_PATTERN.search(stem)
    if match:
        return NameVersion(match.group(1), int(match.group(2)))
    if fallback_to_zero:
        return NameVersion(stem, 0)
    return None


def render(base_name: str, version: int, extension: str = "") -> str:
    if version == 0:
        return f"{base_name}{extension}"
    return f"{base_name}{VERSION_SEPARATOR}{version}{extension}"
