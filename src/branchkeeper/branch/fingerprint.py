from __future__ import annotations

import hashlib
from typing import Iterable

from ..vcs.types import FileChange


def files_fingerprint(files: Iterable[FileChange]) -> str:
    """Content hash of a set of file changes, independent of their order.

    Two file sets hash the same only if every path has the same change type,
    flags and contents; the last entry for a path wins.
    """
    by_path = {}
    for file in files:
        by_path[file.path] = file
    digest = hashlib.sha256()
    for path in sorted(by_path):
        file = by_path[path]
        digest.update(path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(file.type.encode("ascii"))
        digest.update(b"x" if file.is_executable else b"-")
        digest.update(b"l" if file.is_symlink else b"-")
        if file.type == "addition":
            contents = file.contents_bytes()
            digest.update(str(len(contents)).encode("ascii"))
            digest.update(b"\0")
            digest.update(contents)
        digest.update(b"\0")
    return digest.hexdigest()
