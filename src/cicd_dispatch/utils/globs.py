"""
Path glob matching with ``**`` support.

``*`` and ``?`` never cross a ``/``; ``**`` spans any number of path
segments. ``fnmatch`` treats ``*`` as matching ``/``, which makes
``frontend/*`` swallow nested paths, so patterns are translated to regexes
here instead.
"""

import re
from functools import lru_cache
from typing import Pattern

GLOB_CHARS = "*?["


def normalize_path(path: str) -> str:
    """Normalize a repository-relative path to forward-slash form."""
    path = path.replace("\\", "/").strip()
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def literal_prefix(pattern: str) -> str:
    """Characters of ``pattern`` before the first glob metacharacter."""
    for index, char in enumerate(pattern):
        if char in GLOB_CHARS:
            return pattern[:index]
    return pattern


def specificity(pattern: str) -> int:
    """Longer literal prefix means a more specific pattern."""
    return len(literal_prefix(normalize_path(pattern)))


@lru_cache(maxsize=2048)
def compile_glob(pattern: str) -> Pattern:
    pattern = normalize_path(pattern)
    parts = []
    i = 0
    n = len(pattern)
    while i < n:
        char = pattern[i]
        if char == "*":
            if pattern[i : i + 3] == "**/":
                parts.append("(?:.*/)?")
                i += 3
                continue
            if pattern[i : i + 2] == "**":
                parts.append(".*")
                i += 2
                continue
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(char))
            else:
                body = pattern[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append("[" + body.replace("\\", "\\\\") + "]")
                i = end
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("^" + "".join(parts) + "$")


def glob_match(path: str, pattern: str) -> bool:
    """Return True when ``path`` matches ``pattern``."""
    return compile_glob(pattern).match(normalize_path(path)) is not None


def ref_matches(ref: str, pattern: str) -> bool:
    """Match a git ref against a pattern, accepting short or full ref names."""
    if glob_match(ref, pattern):
        return True
    for prefix in ("refs/heads/", "refs/tags/", "refs/pull/"):
        if ref.startswith(prefix) and glob_match(ref[len(prefix) :], pattern):
            return True
    return False
