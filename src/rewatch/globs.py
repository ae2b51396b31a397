from __future__ import annotations

import glob
import os
from collections.abc import Iterable, Sequence

from pathspec import PathSpec

MAGIC_CHARACTERS = frozenset("*?[")


def split_patterns(patterns: str | Iterable[str]) -> tuple[str, ...]:
    if isinstance(patterns, str):
        return tuple(p.strip() for p in patterns.split(",") if p.strip())
    return tuple(patterns)


def is_exclude(pattern: str) -> bool:
    # "!(...)" is a negated extglob class, not an exclusion
    return pattern.startswith("!") and not pattern.startswith("!(")


def preprocess_patterns(patterns: str | Iterable[str]) -> tuple[str, ...]:
    """
    Add a subtree exclusion for every exclude pattern,
    so that excluding a directory also excludes everything below it.
    """
    patterns = split_patterns(patterns)

    additional = []
    for p in patterns:
        if p.startswith("!") and not p.endswith("**/*"):
            additional.append(f"{p}**/*" if p.endswith("/") else f"{p}/**/*")

    return (*patterns, *additional)


def partition(patterns: Iterable[str]) -> tuple[list[str], list[str]]:
    includes: list[str] = []
    excludes: list[str] = []
    for p in patterns:
        if is_exclude(p):
            excludes.append(p[1:])
        else:
            includes.append(p)

    return includes, excludes


def resolve(patterns: str | Iterable[str]) -> list[str]:
    """
    Expand include patterns into concrete paths.

    Exclude patterns apply to every include pattern, regardless of their position in the list.
    """
    includes, excludes = partition(split_patterns(patterns))

    ignore = PathSpec.from_lines("gitwildmatch", excludes) if excludes else None

    found: dict[str, None] = {}
    for pattern in includes:
        for path in glob.glob(pattern, recursive=True):
            if ignore is not None and ignore.match_file(path):
                continue
            found[path] = None

    return list(found)


def static_root(pattern: str) -> tuple[str, bool]:
    """
    Return the longest leading directory of the pattern that contains no glob magic,
    and whether the rest of the pattern can match below the root's immediate children.
    """
    parts = pattern.split("/")
    static: list[str] = []
    for part in parts[:-1]:
        if MAGIC_CHARACTERS.intersection(part):
            break
        static.append(part)

    deep = "**" in pattern or len(parts) - len(static) > 1

    if not static:
        return ("/" if pattern.startswith("/") else "."), deep

    return "/".join(static) or "/", deep


def watch_roots(patterns: Sequence[str]) -> dict[str, bool]:
    """
    Map the static root directory of every include pattern to whether it must be watched recursively.
    """
    includes, _ = partition(patterns)

    roots: dict[str, bool] = {}
    for pattern in includes:
        root, deep = static_root(pattern)
        root = os.path.normpath(root)
        roots[root] = roots.get(root, False) or deep

    return roots
