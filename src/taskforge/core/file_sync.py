"""Incremental sync of staged files into a sandbox.

Generated files are written to a local staging directory first. Each path is
queued and then flushed: the current staged content is read and written to the
sandbox under the remote root, overwriting whatever was there. Flushes of the
same path are serialized so they land in the order they were requested.
"""

import asyncio
import logging
import os
import posixpath
from collections import defaultdict
from pathlib import Path
from typing import Optional

from taskforge.config import settings
from taskforge.core.sandbox import SandboxLifecycleManager
from taskforge.errors import SyncSkipped

logger = logging.getLogger(__name__)


def relative_to_root(root: Path, path: str) -> str:
    """Normalize a staged path to a clean path relative to ``root``.

    Accepts absolute paths inside ``root`` and relative paths. Any other
    leading slashes are stripped.

    Raises:
        ValueError: if the path is empty or escapes ``root``
    """
    base = os.path.normpath(str(root))
    path = path.replace("\\", "/")
    if os.path.isabs(path):
        normalized = os.path.normpath(path)
        if normalized.startswith(base + os.sep):
            path = normalized[len(base) + 1:]
    relative = posixpath.normpath(path.lstrip("/"))
    if relative in (".", "") or relative == ".." or relative.startswith("../"):
        raise ValueError(f"Path is outside the workspace: {path}")
    return relative


class FileSyncQueue:
    """Queue of staged paths waiting to be written into one sandbox."""

    def __init__(
        self,
        manager: SandboxLifecycleManager,
        sandbox_id: str,
        staging_dir: Path,
        remote_root: Optional[str] = None,
    ):
        self.manager = manager
        self.sandbox_id = sandbox_id
        self.staging_dir = staging_dir
        self.remote_root = remote_root or settings.sandbox_remote_root

        self._pending: list[str] = []
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._synced: dict[str, str] = {}
        self._skipped: set[str] = set()

    def relative_path(self, path: str) -> str:
        return relative_to_root(self.staging_dir, path)

    def local_path(self, path: str) -> Path:
        return self.staging_dir / self.relative_path(path)

    def remote_path(self, path: str) -> str:
        return posixpath.join(self.remote_root, self.relative_path(path))

    def enqueue(self, path: str) -> str:
        """Record a path as pending sync.

        Returns:
            The normalized relative path
        """
        relative = self.relative_path(path)
        self._pending.append(relative)
        return relative

    def pending(self) -> list[str]:
        return list(self._pending)

    def synced_paths(self) -> list[str]:
        return sorted(self._synced)

    def skipped_paths(self) -> list[str]:
        """Paths whose staged file was gone at their last flush.

        An earlier copy of such a path stays in the sandbox and in
        ``synced_paths()``.
        """
        return sorted(self._skipped)

    def _read_staged(self, relative: str) -> str:
        try:
            return (self.staging_dir / relative).read_text()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
            raise SyncSkipped(relative) from e

    async def flush(self, path: str) -> Optional[str]:
        """Write the staged content of ``path`` into the sandbox.

        Returns:
            The remote path written, or None if the staged file no longer exists
        """
        relative = self.relative_path(path)
        if relative in self._pending:
            self._pending.remove(relative)

        async with self._locks[relative]:
            try:
                content = self._read_staged(relative)
            except SyncSkipped as e:
                logger.info(f"Skipping sync: {e}")
                self._skipped.add(relative)
                return None

            remote = posixpath.join(self.remote_root, relative)
            await self.manager.write_file(self.sandbox_id, remote, content)
            self._synced[relative] = remote
            self._skipped.discard(relative)

        logger.debug(f"Synced {relative} -> {remote}")
        return remote

    def _staged_files(self) -> list[str]:
        if not self.staging_dir.exists():
            return []
        return sorted(
            p.relative_to(self.staging_dir).as_posix()
            for p in self.staging_dir.rglob("*")
            if p.is_file()
        )

    async def flush_all(self) -> list[str]:
        """Drain the queue and sync every file present in the staging directory.

        Returns:
            Relative paths that are now present in the sandbox
        """
        paths = list(dict.fromkeys(self._pending + self._staged_files()))
        for relative in paths:
            await self.flush(relative)
        return self.synced_paths()
