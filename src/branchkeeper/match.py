from __future__ import annotations

import re
from fnmatch import fnmatchcase
from typing import Iterable


def match_glob(path: str, pattern: str) -> bool:
    """Glob match where ``**/`` may also match zero directories.

    Dotfiles are matched like any other name.
    """
    if path.startswith("./"):
        path = path[2:]
    if fnmatchcase(path, pattern):
        return True
    while pattern.startswith("**/"):
        pattern = pattern[3:]
        if fnmatchcase(path, pattern):
            return True
    return False


def _as_regex(pattern: str) -> re.Pattern[str] | None:
    if len(pattern) > 2 and pattern.startswith("/") and (pattern.endswith("/") or pattern.endswith("/i")):
        flags = re.IGNORECASE if pattern.endswith("/i") else 0
        body = pattern[1:-2] if pattern.endswith("/i") else pattern[1:-1]
        return re.compile(body, flags)
    return None


def _matches(value: str, pattern: str) -> bool:
    regex = _as_regex(pattern)
    if regex is not None:
        return regex.search(value) is not None
    return match_glob(value, pattern)


def match_regex_or_glob_list(value: str, patterns: Iterable[str]) -> bool:
    """True if value matches any positive pattern and no ``!``-negated one.

    Patterns are globs, or regexes written as ``/.../`` (``/.../i`` for
    case-insensitive). A list holding only negations matches everything not
    excluded.
    """
    positives = []
    negatives = []
    for pattern in patterns:
        if pattern.startswith("!"):
            negatives.append(pattern[1:])
        else:
            positives.append(pattern)

    if positives and not any(_matches(value, p) for p in positives):
        return False
    if any(_matches(value, n) for n in negatives):
        return False
    return bool(positives) or bool(negatives)
