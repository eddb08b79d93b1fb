from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Union

Contents = Union[str, bytes, None]


@dataclass
class FileChange:
    """One file operation to apply to a branch.

    ``type == "addition"`` covers both new and modified files. ``contents``
    of ``None`` on an addition means "leave as is" and is skipped on commit.
    """

    type: Literal["addition", "deletion"]
    path: str
    contents: Contents = None
    is_executable: bool = False
    is_symlink: bool = False

    @classmethod
    def addition(cls, path: str, contents: Contents, **kwargs) -> "FileChange":
        return cls(type="addition", path=path, contents=contents, **kwargs)

    @classmethod
    def deletion(cls, path: str) -> "FileChange":
        return cls(type="deletion", path=path)

    def contents_bytes(self) -> bytes:
        if self.contents is None:
            return b""
        if isinstance(self.contents, bytes):
            return self.contents
        return self.contents.encode("utf-8")


@dataclass
class CommitFilesConfig:
    base_branch: Optional[str]
    branch_name: str
    files: List[FileChange]
    message: str
    force: bool = False


@dataclass
class PushFilesConfig:
    source_ref: str
    target_ref: Optional[str] = None
    files: List[FileChange] = field(default_factory=list)


@dataclass
class CommitResult:
    parent_sha: Optional[str]
    sha: str
    files: List[FileChange]


@dataclass
class StatusResult:
    modified: List[str] = field(default_factory=list)
    not_added: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    renamed: Dict[str, str] = field(default_factory=dict)

    @property
    def is_clean(self) -> bool:
        return not (self.modified or self.not_added or self.deleted or self.renamed)


@dataclass(frozen=True)
class TreeItem:
    path: str
    mode: str
    type: Literal["blob", "tree", "commit"]
    sha: str


@dataclass
class StorageConfig:
    """Where the repository lives and how to clone it."""

    url: str
    upstream_url: Optional[str] = None
    default_branch: Optional[str] = None
    full_clone: bool = False
    extra_clone_opts: Dict[str, Optional[str]] = field(default_factory=dict)
    clone_submodules: bool = False
    clone_submodules_filter: List[str] = field(default_factory=lambda: ["*"])
