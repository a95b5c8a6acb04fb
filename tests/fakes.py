"""In-memory stand-ins for the sandbox provider, the model and the GitHub API."""

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx

from taskforge.agents.model import ModelTurn
from taskforge.core.providers import CommandResult, is_ignored
from taskforge.github.objects import git_object_sha


class FakeClock:
    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# =============================================================================
# Sandbox provider
# =============================================================================


@dataclass
class FakeHandle:
    id: str
    metadata: dict[str, str] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    commands: list[str] = field(default_factory=list)
    alive: bool = True


class FakeProvider:
    """Sandbox provider that keeps everything in memory."""

    name = "fake"
    url_scheme = "https"

    def __init__(self):
        self.handles: dict[str, FakeHandle] = {}
        self.fail_create = False
        self.fail_kill: set[str] = set()
        self.failing_commands: dict[str, CommandResult] = {}
        self.killed: list[str] = []
        self._counter = 0

    async def create(self, metadata: dict[str, str]) -> FakeHandle:
        if self.fail_create:
            raise RuntimeError("quota exceeded")
        self._counter += 1
        handle = FakeHandle(id=f"sbx-{self._counter}", metadata=metadata)
        self.handles[handle.id] = handle
        return handle

    async def connect(self, sandbox_id: str) -> FakeHandle:
        handle = self.handles.get(sandbox_id)
        if handle is None or not handle.alive:
            raise RuntimeError(f"sandbox {sandbox_id} not found")
        return handle

    def sandbox_id(self, handle: FakeHandle) -> str:
        return handle.id

    async def kill(self, handle: FakeHandle) -> None:
        if handle.id in self.fail_kill:
            raise RuntimeError("teardown failed")
        handle.alive = False
        self.killed.append(handle.id)

    async def write_file(self, handle: FakeHandle, path: str, content: str) -> None:
        handle.files[path] = content

    async def read_file(self, handle: FakeHandle, path: str) -> str:
        try:
            return handle.files[path]
        except KeyError:
            raise FileNotFoundError(path) from None

    async def list_files(self, handle: FakeHandle, root: str) -> list[str]:
        prefix = root.rstrip("/") + "/"
        return sorted(
            path
            for path in handle.files
            if path.startswith(prefix)
            and not any(is_ignored(part) for part in path[len(prefix):].split("/"))
        )

    async def run_command(
        self,
        handle: FakeHandle,
        command: str,
        timeout: int = 60,
        background: bool = False,
    ) -> CommandResult:
        if not handle.alive:
            raise RuntimeError("sandbox is gone")
        handle.commands.append(command)
        for needle, result in self.failing_commands.items():
            if needle in command:
                return result
        if command.startswith("curl"):
            return CommandResult(exit_code=0, stdout="200")
        return CommandResult(exit_code=0, stdout="ok")

    def get_host(self, handle: FakeHandle, port: int) -> str:
        return f"{port}-{handle.id}.sandbox.test"


# =============================================================================
# Model
# =============================================================================


def text_turn(text: str) -> ModelTurn:
    return ModelTurn(content=[{"type": "text", "text": text}], stop_reason="end_turn")


def tool_turn(*calls: tuple[str, dict], text: Optional[str] = None) -> ModelTurn:
    content: list[dict[str, Any]] = []
    if text:
        content.append({"type": "text", "text": text})
    for index, (name, tool_input) in enumerate(calls):
        content.append({"type": "tool_use", "id": f"toolu_{name}_{index}", "name": name, "input": tool_input})
    return ModelTurn(content=content, stop_reason="tool_use")


def write(path: str, content: str) -> tuple[str, dict]:
    return ("write_file", {"path": path, "content": content})


class FakeModel:
    """Replays scripted turns; answers with plain text once the script runs out."""

    model = "fake-model"

    def __init__(self, turns: Optional[list[ModelTurn]] = None, repeat: Optional[ModelTurn] = None):
        self.turns = list(turns or [])
        self.repeat = repeat
        self.calls: list[list[dict[str, Any]]] = []

    async def complete(self, system: str, messages: list[dict], tools: list[dict]) -> ModelTurn:
        self.calls.append(list(messages))
        if self.turns:
            return self.turns.pop(0)
        if self.repeat is not None:
            return self.repeat
        return text_turn("Done.")


# =============================================================================
# GitHub
# =============================================================================


def _sha(*parts: Any) -> str:
    return hashlib.sha1(json.dumps(parts, sort_keys=True).encode()).hexdigest()


class FakeGitHub:
    """Enough of the GitHub REST API for commits, branches and pull requests."""

    def __init__(self, owner: str = "acme", repo: str = "webapp"):
        self.owner = owner
        self.repo = repo
        self.blobs: dict[str, str] = {}
        self.trees: dict[str, dict[str, str]] = {}
        self.commits: dict[str, dict[str, Any]] = {}
        self.refs: dict[str, str] = {}
        self.pulls: dict[int, dict[str, Any]] = {}
        self.requests: list[tuple[str, str]] = []
        self.blob_sha_override: Optional[str] = None
        self.fail_merge = False

        root_tree = _sha("tree", {})
        self.trees[root_tree] = {}
        initial = _sha("commit", root_tree, [], "initial")
        self.commits[initial] = {"tree": root_tree, "parents": [], "message": "initial"}
        self.refs["main"] = initial

    @property
    def base(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def commit_files(self, sha: str) -> dict[str, str]:
        tree = self.trees[self.commits[sha]["tree"]]
        return {path: self.blobs[blob] for path, blob in tree.items()}

    def is_ancestor(self, ancestor: str, sha: str) -> bool:
        pending = [sha]
        while pending:
            current = pending.pop()
            if current == ancestor:
                return True
            pending.extend(self.commits.get(current, {}).get("parents", []))
        return False

    def advance(self, branch: str, files: dict[str, str], message: str = "other change") -> str:
        """Move a branch forward as if someone else had pushed."""
        parent = self.refs[branch]
        tree = dict(self.trees[self.commits[parent]["tree"]])
        for path, content in files.items():
            blob = git_object_sha("blob", content.encode())
            self.blobs[blob] = content
            tree[path] = blob
        tree_sha = _sha("tree", tree)
        self.trees[tree_sha] = tree
        sha = _sha("commit", tree_sha, [parent], message)
        self.commits[sha] = {"tree": tree_sha, "parents": [parent], "message": message}
        self.refs[branch] = sha
        return sha

    def handle(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.requests.append((method, path))
        body = json.loads(request.content) if request.content else {}

        if not path.startswith(self.base):
            return httpx.Response(404, json={"message": "Not Found"})
        path = path[len(self.base):]

        match = re.fullmatch(r"/git/ref/heads/(.+)", path)
        if method == "GET" and match:
            sha = self.refs.get(match.group(1))
            if sha is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json={"object": {"sha": sha, "type": "commit"}})

        match = re.fullmatch(r"/branches/(.+)", path)
        if method == "GET" and match:
            sha = self.refs.get(match.group(1))
            if sha is None:
                return httpx.Response(404, json={"message": "Branch not found"})
            return httpx.Response(200, json={"name": match.group(1), "commit": {"sha": sha}})

        match = re.fullmatch(r"/git/commits/([0-9a-f]+)", path)
        if method == "GET" and match:
            commit = self.commits.get(match.group(1))
            if commit is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(
                200,
                json={
                    "sha": match.group(1),
                    "tree": {"sha": commit["tree"]},
                    "parents": [{"sha": p} for p in commit["parents"]],
                    "message": commit["message"],
                },
            )

        if method == "POST" and path == "/git/blobs":
            content = body["content"]
            sha = self.blob_sha_override or git_object_sha("blob", content.encode())
            self.blobs[sha] = content
            return httpx.Response(201, json={"sha": sha})

        if method == "POST" and path == "/git/trees":
            tree = dict(self.trees.get(body.get("base_tree"), {}))
            for entry in body["tree"]:
                tree[entry["path"]] = entry["sha"]
            sha = _sha("tree", tree)
            self.trees[sha] = tree
            return httpx.Response(201, json={"sha": sha})

        if method == "POST" and path == "/git/commits":
            sha = _sha("commit", body["tree"], body["parents"], body["message"])
            self.commits[sha] = {
                "tree": body["tree"],
                "parents": body["parents"],
                "message": body["message"],
            }
            return httpx.Response(
                201,
                json={"sha": sha, "html_url": f"https://github.test/{self.owner}/{self.repo}/commit/{sha}"},
            )

        match = re.fullmatch(r"/git/refs/heads/(.+)", path)
        if method == "PATCH" and match:
            branch = match.group(1)
            current = self.refs.get(branch)
            if current is None:
                return httpx.Response(422, json={"message": "Reference does not exist"})
            if not body.get("force") and not self.is_ancestor(current, body["sha"]):
                return httpx.Response(422, json={"message": "Update is not a fast forward"})
            self.refs[branch] = body["sha"]
            return httpx.Response(200, json={"object": {"sha": body["sha"]}})

        if method == "POST" and path == "/git/refs":
            branch = body["ref"].removeprefix("refs/heads/")
            if branch in self.refs:
                return httpx.Response(422, json={"message": "Reference already exists"})
            self.refs[branch] = body["sha"]
            return httpx.Response(201, json={"ref": body["ref"], "object": {"sha": body["sha"]}})

        if method == "POST" and path == "/pulls":
            number = len(self.pulls) + 1
            pr = {
                "number": number,
                "html_url": f"https://github.test/{self.owner}/{self.repo}/pull/{number}",
                "state": "open",
                "merged": False,
                **body,
            }
            self.pulls[number] = pr
            return httpx.Response(201, json=pr)

        match = re.fullmatch(r"/pulls/(\d+)/merge", path)
        if method == "PUT" and match:
            pr = self.pulls.get(int(match.group(1)))
            if pr is None:
                return httpx.Response(404, json={"message": "Not Found"})
            if self.fail_merge:
                return httpx.Response(405, json={"message": "Pull Request is not mergeable"})
            pr.update(state="closed", merged=True, merge_method=body.get("merge_method"))
            return httpx.Response(200, json={"merged": True, "sha": self.refs.get(pr["head"])})

        return httpx.Response(404, json={"message": f"No fake for {method} {path}"})


def sse_events(body: str) -> list[tuple[str, dict]]:
    """Parse a server-sent-events body into (event, data) pairs."""
    events = []
    for frame in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events
