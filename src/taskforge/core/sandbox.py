"""Sandbox lifecycle management for TaskForge.

The manager is the only owner of the sandbox registry. Registry inserts and
removals happen under a single asyncio lock; provider calls (which go over the
network) always happen outside of it, so one slow create or teardown never
blocks other sandbox operations.

Expiry is driven by an injected clock and an explicit ``sweep()``. The
background sweeper just calls ``sweep()`` on an interval.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from taskforge.config import settings
from taskforge.core.providers import CommandResult, SandboxProvider
from taskforge.errors import ProvisionFailure, SandboxNotFound

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

WEB_SERVER_SCRIPT = """#!/bin/bash
cd {directory}
while true; do
  python3 -m http.server {port}
  sleep 1
done
"""


class SandboxStatus(str, Enum):
    """Sandbox lifecycle states."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"


@dataclass
class Sandbox:
    """A registered remote sandbox."""

    id: str
    owner_project_id: Optional[str]
    created_at: datetime
    expires_at: datetime
    status: SandboxStatus = SandboxStatus.ACTIVE
    handle: Any = field(default=None, repr=False, compare=False)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class SandboxLifecycleManager:
    """Provisions, tracks and expires sandboxes."""

    def __init__(
        self,
        provider: SandboxProvider,
        clock: Clock = datetime.utcnow,
        ttl_seconds: Optional[int] = None,
        sweep_interval_seconds: Optional[float] = None,
        server_startup_delay: float = 3.0,
    ):
        self.provider = provider
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds or settings.sandbox_ttl_seconds)
        self.sweep_interval = sweep_interval_seconds or settings.sandbox_sweep_interval_seconds
        self.server_startup_delay = server_startup_delay

        self._sandboxes: dict[str, Sandbox] = {}
        self._closing: set[str] = set()
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create(self, owner_id: Optional[str] = None) -> Sandbox:
        """Provision a sandbox and register it once it exists remotely."""
        logger.info(f"Creating sandbox for project {owner_id}")
        metadata = {"project_id": owner_id} if owner_id else {}
        try:
            handle = await self.provider.create(metadata)
        except Exception as e:
            logger.error(f"Failed to create sandbox: {e}")
            raise ProvisionFailure(f"Failed to create sandbox: {e}") from e

        sandbox = self._new_entry(handle, owner_id)
        async with self._lock:
            self._sandboxes[sandbox.id] = sandbox

        logger.info(f"Sandbox created: {sandbox.id}")
        return sandbox

    def _new_entry(self, handle: Any, owner_id: Optional[str]) -> Sandbox:
        now = self.clock()
        return Sandbox(
            id=self.provider.sandbox_id(handle),
            owner_project_id=owner_id,
            created_at=now,
            expires_at=now + self.ttl,
            handle=handle,
        )

    def get(self, sandbox_id: str) -> Optional[Sandbox]:
        """Look up a registered sandbox."""
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox and sandbox.status == SandboxStatus.ACTIVE and sandbox.is_expired(self.clock()):
            sandbox.status = SandboxStatus.EXPIRED
        return sandbox

    async def close(self, sandbox_id: str) -> bool:
        """Tear down a sandbox and drop it from the registry.

        Closing an unknown or already closed id is a no-op. A teardown failure
        is logged and leaves the entry registered so a later sweep retries it.

        Returns:
            True if the sandbox was torn down by this call
        """
        async with self._lock:
            sandbox = self._sandboxes.get(sandbox_id)
            if sandbox is None or sandbox_id in self._closing:
                return False
            self._closing.add(sandbox_id)

        try:
            logger.info(f"Closing sandbox: {sandbox_id}")
            await self.provider.kill(sandbox.handle)
        except Exception as e:
            logger.error(f"Failed to close sandbox {sandbox_id}: {e}")
            async with self._lock:
                self._closing.discard(sandbox_id)
            return False

        async with self._lock:
            self._closing.discard(sandbox_id)
            self._sandboxes.pop(sandbox_id, None)
        sandbox.status = SandboxStatus.CLOSED

        logger.info(f"Sandbox closed: {sandbox_id}")
        return True

    async def sweep(self) -> list[str]:
        """Close every sandbox whose expiry has passed.

        Returns:
            Ids of the sandboxes that were closed
        """
        now = self.clock()
        async with self._lock:
            expired = [s for s in self._sandboxes.values() if s.is_expired(now)]

        if not expired:
            return []

        logger.info(f"Cleaning up {len(expired)} expired sandboxes...")
        closed = []
        for sandbox in expired:
            sandbox.status = SandboxStatus.EXPIRED
            if await self.close(sandbox.id):
                closed.append(sandbox.id)
        return closed

    async def reconnect(self, sandbox_id: str, owner_id: Optional[str] = None) -> Sandbox:
        """Return a live sandbox for ``sandbox_id``, replacing it if it is gone.

        A registered sandbox is health-checked first. Otherwise the provider
        tries to re-attach to the remote id, and as a last resort a new sandbox
        is created for the owner. Re-attaching never extends a registered
        sandbox's expiry, and an expired sandbox is closed and replaced.
        """
        existing = self.get(sandbox_id)
        if existing and existing.status == SandboxStatus.EXPIRED:
            logger.info(f"Sandbox {sandbox_id} has expired")
            return await self._replace(sandbox_id, owner_id)

        if existing:
            try:
                result = await self.provider.run_command(
                    existing.handle, 'echo "health check"', timeout=5
                )
                if result.ok:
                    return existing
                logger.warning(f"Sandbox {sandbox_id} failed health check: {result.format()}")
            except Exception as e:
                logger.warning(f"Sandbox {sandbox_id} not responding: {e}")

        try:
            handle = await self.provider.connect(sandbox_id)
        except Exception as e:
            logger.info(f"Could not reconnect to sandbox {sandbox_id}: {e}")
            return await self._replace(sandbox_id, owner_id)

        if existing:
            sandbox = Sandbox(
                id=existing.id,
                owner_project_id=existing.owner_project_id,
                created_at=existing.created_at,
                expires_at=existing.expires_at,
                handle=handle,
            )
        else:
            sandbox = self._new_entry(handle, owner_id)
        async with self._lock:
            self._sandboxes[sandbox.id] = sandbox
        logger.info(f"Reconnected to sandbox {sandbox_id}")
        return sandbox

    async def _replace(self, sandbox_id: str, owner_id: Optional[str]) -> Sandbox:
        # A failed teardown stays registered for the sweeper
        await self.close(sandbox_id)
        replacement = await self.create(owner_id)
        logger.info(f"Created sandbox {replacement.id} to replace {sandbox_id}")
        return replacement

    async def close_all(self) -> None:
        """Close every registered sandbox (shutdown)."""
        await self.stop_sweeper()
        for sandbox_id in list(self._sandboxes):
            await self.close(sandbox_id)

    def stats(self) -> dict[str, int]:
        now = self.clock()
        expired = sum(1 for s in self._sandboxes.values() if s.is_expired(now))
        return {
            "total": len(self._sandboxes),
            "active": len(self._sandboxes) - expired,
            "expired": expired,
        }

    # =========================================================================
    # Periodic sweep
    # =========================================================================

    def start_sweeper(self) -> None:
        """Start sweeping expired sandboxes in the background."""
        if self._sweeper and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever())

    async def stop_sweeper(self) -> None:
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error sweeping sandboxes: {e}")

    # =========================================================================
    # Sandbox operations
    # =========================================================================

    def _require(self, sandbox_id: str) -> Sandbox:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None:
            raise SandboxNotFound(sandbox_id)
        return sandbox

    async def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        sandbox = self._require(sandbox_id)
        await self.provider.write_file(sandbox.handle, path, content)

    async def read_file(self, sandbox_id: str, path: str) -> str:
        sandbox = self._require(sandbox_id)
        return await self.provider.read_file(sandbox.handle, path)

    async def list_files(self, sandbox_id: str, root: Optional[str] = None) -> list[str]:
        sandbox = self._require(sandbox_id)
        return await self.provider.list_files(sandbox.handle, root or settings.sandbox_remote_root)

    async def run_command(
        self,
        sandbox_id: str,
        command: str,
        timeout: int = 60,
        background: bool = False,
    ) -> CommandResult:
        sandbox = self._require(sandbox_id)
        try:
            return await self.provider.run_command(
                sandbox.handle, command, timeout=timeout, background=background
            )
        except Exception as e:
            raise ProvisionFailure(f"Command failed to run in sandbox {sandbox_id}: {e}") from e

    def get_host(self, sandbox_id: str, port: int) -> str:
        sandbox = self._require(sandbox_id)
        return self.provider.get_host(sandbox.handle, port)

    async def start_web_server(
        self,
        sandbox_id: str,
        directory: Optional[str] = None,
        port: Optional[int] = None,
    ) -> str:
        """Serve ``directory`` over HTTP inside the sandbox.

        Returns:
            Public preview URL
        """
        directory = directory or settings.sandbox_remote_root
        port = port or settings.sandbox_preview_port
        logger.info(f"Starting web server in sandbox {sandbox_id} on port {port}...")

        script = WEB_SERVER_SCRIPT.format(directory=directory, port=port)
        await self.write_file(sandbox_id, "/tmp/start_server.sh", script)
        await self.run_command(sandbox_id, "chmod +x /tmp/start_server.sh")
        await self.run_command(
            sandbox_id,
            "nohup /tmp/start_server.sh > /tmp/server.log 2>&1 &",
            background=True,
        )

        if self.server_startup_delay:
            await asyncio.sleep(self.server_startup_delay)

        check = await self.run_command(
            sandbox_id,
            f'curl -s -o /dev/null -w "%{{http_code}}" http://localhost:{port}/ 2>/dev/null || echo "000"',
            timeout=5,
        )
        logger.info(f"Web server check in {sandbox_id}: {check.stdout.strip() or '000'}")

        url = f"{self.provider.url_scheme}://{self.get_host(sandbox_id, port)}"
        logger.info(f"Web server started at {url}")
        return url
