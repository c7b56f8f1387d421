"""Match newly created paths against the configured thread mappings."""

from __future__ import annotations

import fnmatch
import posixpath
from collections.abc import Sequence

from file_dispatcher.config import ThreadMapping
from file_dispatcher.platform_utils import to_slash


def _split(path: str) -> list[str]:
    return [part for part in path.split("/") if part]


def is_direct_child(path: str, source: str) -> bool:
    """Return True if *path* sits directly inside *source*.

    *source* is treated as a glob: each of its segments is matched against
    the corresponding segment of the parent directory, so wildcards never
    cross a separator and the match is exactly one level deep.  A segment
    that is equal to its pattern always matches, so folder names holding
    glob characters (``data[1]``) still match themselves.
    """
    parent, name = posixpath.split(path)
    if not name:
        return False
    if parent.startswith("/") != source.startswith("/"):
        return False
    parent_parts = _split(parent)
    source_parts = _split(source)
    if len(parent_parts) != len(source_parts):
        return False
    return all(
        part == pattern or fnmatch.fnmatchcase(part, pattern)
        for part, pattern in zip(parent_parts, source_parts)
    )


def match_mapping(path: str, mappings: Sequence[ThreadMapping]) -> int | None:
    """Return the index of the first mapping owning *path*, or None."""
    path = to_slash(path)
    for index, mapping in enumerate(mappings):
        if is_direct_child(path, mapping.source):
            return index
    return None
