# paths.py
from __future__ import annotations

import hashlib
import re
from functools import lru_cache
from pathlib import Path
from typing import Iterable, List, Sequence

# ---------------------------------------------------------------------
# Filter pattern matching
# ---------------------------------------------------------------------
# Workflow filters (branches, tags, paths, hashFiles) use the same glob
# dialect:
#   *    any run of characters except '/'
#   **   any run of characters, '/' included
#   ?    one character except '/'
#   [..] character class
#   !pat negates an earlier positive match (order matters)
# ---------------------------------------------------------------------

DEFAULT_HASH_EXCLUDES = (".git/**",)


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> re.Pattern:
    i, n = 0, len(pattern)
    out: List[str] = []
    while i < n:
        c = pattern[i]
        if c == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                i += 2
                # "**/" also matches zero directories
                if i < n and pattern[i] == "/":
                    out.append("(?:.*/)?")
                    i += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = pattern.find("]", i + 1)
            if j == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:j]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = j
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(value: str, pattern: str) -> bool:
    return compile_glob(pattern).match(value) is not None


def match_filters(value: str, patterns: Sequence[str]) -> bool:
    """
    Evaluate an ordered include list with `!` negations.

    The last pattern that matches decides.
    """
    matched = False
    for pat in patterns:
        if pat.startswith("!"):
            if matched and glob_match(value, pat[1:]):
                matched = False
        elif glob_match(value, pat):
            matched = True
    return matched


def matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(glob_match(value, p) for p in patterns)


# ---------------------------------------------------------------------
# hashFiles()
# ---------------------------------------------------------------------

def _sha256_file(path: Path) -> bytes:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.digest()


def _relpath(p: Path, root: Path) -> str:
    return str(p.relative_to(root)).replace("\\", "/")


def resolve_files(root: str | Path, patterns: Sequence[str]) -> List[Path]:
    """Files under `root` selected by `patterns`, sorted by relative path."""
    root_p = Path(root).resolve()
    if not root_p.is_dir():
        return []

    selected: List[Path] = []
    for p in sorted(root_p.rglob("*")):
        if not p.is_file():
            continue
        rel = _relpath(p, root_p)
        if matches_any(rel, DEFAULT_HASH_EXCLUDES):
            continue
        if match_filters(rel, patterns):
            selected.append(p)
    return selected


def hash_files(root: str | Path, patterns: Sequence[str]) -> str:
    """
    SHA-256 over the per-file SHA-256 digests of every matched file.

    Returns an empty string when nothing matches.
    """
    files = resolve_files(root, patterns)
    if not files:
        return ""
    h = hashlib.sha256()
    for f in files:
        h.update(_sha256_file(f))
    return h.hexdigest()
