"""
Ignore rules and glob exclusion matching for file synchronization.

Rules come from a ".odoignore" file, or a ".gitignore" file when no
".odoignore" exists. ".git" is always ignored.
"""

import fnmatch
import logging
import os
from typing import Iterable, List

logger = logging.getLogger(__name__)

IGNORE_FILES = (".odoignore", ".gitignore")


def get_ignore_rules_from_directory(directory: str) -> List[str]:
    """
    Read ignore rules for a component source directory.

    Blank lines, comments and ".git*" rules are skipped; ".git" is always the
    first rule.

    Args:
        directory: Directory holding the ignore file

    Returns:
        List of glob rules relative to directory
    """
    rules = [".git"]

    for ignore_file in IGNORE_FILES:
        path = os.path.join(directory, ignore_file)
        if os.path.isfile(path):
            break
    else:
        return rules

    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\r\n")
            if not line.strip():
                continue
            if line.startswith("#") or line.startswith(".git"):
                continue
            rules.append(line)

    logger.debug(f"[SYNC] Loaded {len(rules)} ignore rules from {path}")
    return rules


def get_abs_glob_exps(directory: str, glob_exps: Iterable[str]) -> List[str]:
    """Convert glob expressions relative to directory into absolute, cleaned ones."""
    return [os.path.normpath(os.path.join(directory, glob_exp)) for glob_exp in glob_exps]


def to_slash(path: str) -> str:
    """Normalize path separators to forward slashes."""
    return path.replace("\\", "/")


def is_glob_exp_match(path: str, glob_exps: Iterable[str]) -> bool:
    """
    Check whether path matches any of the glob expressions.

    Both the path and every expression are normalized to forward slashes
    before matching, so Windows style rules and paths behave the same as
    POSIX ones. Matching is done per path segment: "*" and "?" never match
    a "/", and a rule only matches paths with as many segments as it has.

    Examples:
        >>> is_glob_exp_match("/src/debug.log", ["/src/*.log"])
        True
        >>> is_glob_exp_match("/src/logs/debug.log", ["/src/*.log"])
        False
    """
    normalized = to_slash(path)
    for glob_exp in glob_exps:
        if _match_segments(normalized, to_slash(glob_exp)):
            logger.debug(f"[SYNC] Ignoring path {path} because of glob rule {glob_exp}")
            return True
    return False


def _match_segments(path: str, glob_exp: str) -> bool:
    path_parts = path.split("/")
    glob_parts = glob_exp.split("/")
    if len(path_parts) != len(glob_parts):
        return False
    return all(fnmatch.fnmatchcase(part, pattern) for part, pattern in zip(path_parts, glob_parts))
