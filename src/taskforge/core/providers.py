"""Sandbox providers for TaskForge.

A provider knows how to create, reach and destroy one kind of remote execution
environment. The lifecycle manager owns the registry; providers are stateless
apart from their client configuration.

Two providers are available:
- e2b: hosted microVM sandboxes via e2b-code-interpreter
- docker: local containers via python-on-whales
"""

import asyncio
import logging
import posixpath
import shlex
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol
from uuid import uuid4

from e2b import CommandExitException, FileType
from e2b_code_interpreter import AsyncSandbox
from python_on_whales import DockerClient
from python_on_whales.exceptions import DockerException

from taskforge.config import settings

logger = logging.getLogger(__name__)

IGNORED_NAMES = ("node_modules",)


@dataclass
class CommandResult:
    """Outcome of a command run inside a sandbox."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def format(self, limit: int = 10000) -> str:
        """Render output for feeding back to the model."""
        parts = [f"exit code: {self.exit_code}"]
        if self.stdout:
            parts.append(f"stdout:\n{self.stdout[-limit:]}")
        if self.stderr:
            parts.append(f"stderr:\n{self.stderr[-limit:]}")
        return "\n".join(parts)


def is_ignored(name: str) -> bool:
    return name.startswith(".") or name in IGNORED_NAMES


class SandboxProvider(Protocol):
    """Operations a remote sandbox backend must offer."""

    name: str
    url_scheme: str

    async def create(self, metadata: dict[str, str]) -> Any:
        """Provision a new environment and return its handle."""
        ...

    async def connect(self, sandbox_id: str) -> Any:
        """Re-attach to an existing environment by id."""
        ...

    def sandbox_id(self, handle: Any) -> str:
        ...

    async def kill(self, handle: Any) -> None:
        ...

    async def write_file(self, handle: Any, path: str, content: str) -> None:
        ...

    async def read_file(self, handle: Any, path: str) -> str:
        ...

    async def list_files(self, handle: Any, root: str) -> list[str]:
        """List regular files under root recursively, skipping hidden entries."""
        ...

    async def run_command(
        self,
        handle: Any,
        command: str,
        timeout: int = 60,
        background: bool = False,
    ) -> CommandResult:
        ...

    def get_host(self, handle: Any, port: int) -> str:
        ...


# =============================================================================
# E2B
# =============================================================================


class E2BSandboxProvider:
    """Hosted sandboxes from E2B."""

    name = "e2b"
    url_scheme = "https"

    def __init__(
        self,
        api_key: Optional[str] = None,
        template: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api_key = api_key or (
            settings.e2b_api_key.get_secret_value() if settings.e2b_api_key else None
        )
        self.template = template or settings.sandbox_template
        # Keep the remote lifetime a little longer than our own TTL so the
        # sweeper, not E2B, decides when a sandbox goes away.
        self.timeout_seconds = timeout_seconds or settings.sandbox_ttl_seconds + 300

    def _options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.api_key:
            options["api_key"] = self.api_key
        return options

    async def create(self, metadata: dict[str, str]) -> AsyncSandbox:
        kwargs = self._options()
        if self.template:
            kwargs["template"] = self.template
        return await AsyncSandbox.create(
            timeout=self.timeout_seconds,
            metadata=metadata,
            **kwargs,
        )

    async def connect(self, sandbox_id: str) -> AsyncSandbox:
        return await AsyncSandbox.connect(sandbox_id, **self._options())

    def sandbox_id(self, handle: AsyncSandbox) -> str:
        return handle.sandbox_id

    async def kill(self, handle: AsyncSandbox) -> None:
        await handle.kill()

    async def write_file(self, handle: AsyncSandbox, path: str, content: str) -> None:
        await handle.files.write(path, content)

    async def read_file(self, handle: AsyncSandbox, path: str) -> str:
        return await handle.files.read(path)

    async def list_files(self, handle: AsyncSandbox, root: str) -> list[str]:
        files: list[str] = []
        pending = [root]
        while pending:
            directory = pending.pop()
            for entry in await handle.files.list(directory):
                if is_ignored(entry.name):
                    continue
                full_path = posixpath.join(directory, entry.name)
                if entry.type == FileType.DIR:
                    pending.append(full_path)
                else:
                    files.append(full_path)
        return sorted(files)

    async def run_command(
        self,
        handle: AsyncSandbox,
        command: str,
        timeout: int = 60,
        background: bool = False,
    ) -> CommandResult:
        if background:
            await handle.commands.run(command, background=True)
            return CommandResult(exit_code=0)
        try:
            result = await handle.commands.run(command, timeout=timeout)
        except CommandExitException as e:
            return CommandResult(exit_code=e.exit_code, stdout=e.stdout, stderr=e.stderr)
        return CommandResult(
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def get_host(self, handle: AsyncSandbox, port: int) -> str:
        return handle.get_host(port)


# =============================================================================
# Docker
# =============================================================================


@dataclass
class DockerSandbox:
    """A sandbox container started by the docker provider."""

    container_id: str
    container_name: str


class DockerSandboxProvider:
    """Local container sandboxes, for development without E2B."""

    name = "docker"
    url_scheme = "http"

    def __init__(
        self,
        image: Optional[str] = None,
        network_name: Optional[str] = None,
        memory_limit: str = "2g",
        cpu_limit: float = 2.0,
        client: Optional[DockerClient] = None,
    ):
        self.docker = client or DockerClient()
        self.image = image or settings.docker_image
        self.network_name = network_name or settings.docker_network
        self.memory_limit = memory_limit
        self.cpu_limit = cpu_limit
        self._network_ready = False

    def _ensure_network(self) -> None:
        """Ensure the Docker network exists."""
        if self._network_ready:
            return
        if not self.docker.network.exists(self.network_name):
            self.docker.network.create(self.network_name, driver="bridge")
        self._network_ready = True

    def _run(self, metadata: dict[str, str]) -> DockerSandbox:
        self._ensure_network()
        container_name = f"taskforge-sandbox-{uuid4().hex[:12]}"
        container = self.docker.container.run(
            self.image,
            name=container_name,
            detach=True,
            networks=[self.network_name],
            labels={f"taskforge.{k}": v for k, v in metadata.items()},
            memory=self.memory_limit,
            cpus=self.cpu_limit,
            # Keep container running
            command=["tail", "-f", "/dev/null"],
        )
        return DockerSandbox(container_id=container.id, container_name=container_name)

    async def create(self, metadata: dict[str, str]) -> DockerSandbox:
        return await asyncio.to_thread(self._run, metadata)

    async def connect(self, sandbox_id: str) -> DockerSandbox:
        container = await asyncio.to_thread(self.docker.container.inspect, sandbox_id)
        if not container.state.running:
            raise RuntimeError(f"Container {sandbox_id} is not running")
        return DockerSandbox(container_id=container.id, container_name=container.name)

    def sandbox_id(self, handle: DockerSandbox) -> str:
        return handle.container_id

    async def kill(self, handle: DockerSandbox) -> None:
        await asyncio.to_thread(
            self.docker.container.remove, handle.container_id, force=True
        )

    def _copy_in(self, handle: DockerSandbox, path: str, content: str) -> None:
        self.docker.container.execute(
            handle.container_id, ["mkdir", "-p", posixpath.dirname(path) or "/"]
        )
        with tempfile.TemporaryDirectory() as tmp:
            local = Path(tmp) / "payload"
            local.write_text(content)
            self.docker.container.copy(local, (handle.container_id, path))

    async def write_file(self, handle: DockerSandbox, path: str, content: str) -> None:
        await asyncio.to_thread(self._copy_in, handle, path, content)

    async def read_file(self, handle: DockerSandbox, path: str) -> str:
        return await asyncio.to_thread(
            self.docker.container.execute, handle.container_id, ["cat", path]
        )

    async def list_files(self, handle: DockerSandbox, root: str) -> list[str]:
        output = await asyncio.to_thread(
            self.docker.container.execute,
            handle.container_id,
            [
                "find", root,
                "(", "-name", ".*", "-o", "-name", "node_modules", ")", "-prune",
                "-o", "-type", "f", "-print",
            ],
        )
        return sorted(line for line in output.splitlines() if line)

    def _execute(self, handle: DockerSandbox, command: str, background: bool) -> CommandResult:
        try:
            output = self.docker.container.execute(
                handle.container_id,
                ["sh", "-c", command],
                detach=background,
            )
        except DockerException as e:
            return CommandResult(
                exit_code=e.return_code,
                stdout=e.stdout or "",
                stderr=e.stderr or "",
            )
        return CommandResult(exit_code=0, stdout=output or "")

    async def run_command(
        self,
        handle: DockerSandbox,
        command: str,
        timeout: int = 60,
        background: bool = False,
    ) -> CommandResult:
        if not background:
            command = f"timeout {int(timeout)} sh -c {shlex.quote(command)}"
        return await asyncio.to_thread(self._execute, handle, command, background)

    def get_host(self, handle: DockerSandbox, port: int) -> str:
        # Reachable from other containers on the sandbox network
        return f"{handle.container_name}:{port}"


def get_provider(name: Optional[str] = None) -> SandboxProvider:
    """Build the configured sandbox provider."""
    name = name or settings.sandbox_provider
    if name == "e2b":
        return E2BSandboxProvider()
    if name == "docker":
        return DockerSandboxProvider()
    raise ValueError(f"Unknown sandbox provider: {name}")
