"""Immutable git object values used to build commits.

Blob hashes are computed locally the same way git does, so the id of every
blob is known before it is uploaded and can be checked against the host.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Optional

FILE_MODE = "100644"


def git_object_sha(kind: str, data: bytes) -> str:
    """SHA-1 of a loose git object: ``<kind> <size>\\0<data>``."""
    header = f"{kind} {len(data)}\0".encode()
    return hashlib.sha1(header + data).hexdigest()


@dataclass(frozen=True)
class Blob:
    """File content at a path."""

    path: str
    content: str

    @property
    def data(self) -> bytes:
        return self.content.encode("utf-8")

    @property
    def sha(self) -> str:
        return git_object_sha("blob", self.data)


@dataclass(frozen=True)
class TreeEntry:
    path: str
    sha: str
    mode: str = FILE_MODE
    type: str = "blob"

    @classmethod
    def for_blob(cls, blob: Blob) -> "TreeEntry":
        return cls(path=blob.path, sha=blob.sha)

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "mode": self.mode, "type": self.type, "sha": self.sha}


@dataclass(frozen=True)
class Tree:
    sha: str
    entries: tuple[TreeEntry, ...] = ()
    base_tree: Optional[str] = None


@dataclass(frozen=True)
class Commit:
    sha: str
    tree_sha: str
    parents: tuple[str, ...] = ()
    message: str = ""
    html_url: Optional[str] = None


@dataclass(frozen=True)
class CommitPlan:
    """Working state of one commit build.

    Only exists for the duration of a single build; nothing here is persisted.
    """

    branch: str
    base_sha: str
    files: dict[str, str] = field(default_factory=dict, hash=False)
    tree_sha: Optional[str] = None
    commit_sha: Optional[str] = None

    @property
    def blobs(self) -> list[Blob]:
        return [Blob(path=path, content=content) for path, content in sorted(self.files.items())]
