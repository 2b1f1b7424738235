"""Unified diff parser — splits a raw diff into per-file change records.

Each file block starts at a ``diff --git a/<old> b/<new>`` header line and
runs until the next header.  The block is kept verbatim (header included)
because review prompts operate on the whole block, not on a stripped hunk.

This module is a pure function: ``parse_diff(str) -> list[FileChange]``.
Skip rules live in ``diffwarden.core.file_filter``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileChange:
    """One changed file, with its full diff block."""

    path: str                                   # New path (b/ side)
    diff: str                                   # Verbatim block, header included


# diff --git a/path/to/old b/path/to/new
_FILE_HEADER_RE = re.compile(r"^diff --git a/(.*?) b/(.*?)\s*$")


def parse_diff(diff_text: str) -> list[FileChange]:
    """Split a unified diff into one ``FileChange`` per file header.

    Text before the first header is ignored.  A diff with no
    ``diff --git`` header at all yields an empty list, not an error.

    Args:
        diff_text: Raw unified diff from the source-control host.

    Returns:
        ``FileChange`` records in diff order.
    """
    if not diff_text or not diff_text.strip():
        return []

    files: list[FileChange] = []
    current: list[str] = []
    current_path = ""

    for line in diff_text.splitlines(keepends=True):
        header = _FILE_HEADER_RE.match(line.rstrip("\r\n"))
        if header:
            if current:
                files.append(FileChange(path=current_path, diff="".join(current)))
            current = [line]
            current_path = header.group(2)
            continue
        if current:
            current.append(line)

    if current:
        files.append(FileChange(path=current_path, diff="".join(current)))

    logger.debug("Parsed diff: %d files", len(files))
    return files
