"""REST adapter for repository-level GitHub operations.

Translates the git object value types to and from the GitHub Git Data API.
Non-success responses raise ``GitHubAPIError``.
"""

import logging
from typing import Any, Iterable, Optional

import httpx

from taskforge.config import settings
from taskforge.errors import GitHubAPIError
from taskforge.github.auth import GITHUB_HEADERS, GitHubAuth, get_auth
from taskforge.github.objects import Blob, Commit, Tree, TreeEntry

logger = logging.getLogger(__name__)


class GitHubRepoClient:
    """Client for repository-level GitHub operations."""

    def __init__(
        self,
        auth: Optional[GitHubAuth] = None,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.auth = auth or get_auth()
        self.api_url = (api_url or settings.github_api_url).rstrip("/")
        self.transport = transport

    async def _request(
        self,
        method: str,
        endpoint: str,
        **kwargs,
    ) -> httpx.Response:
        token = await self.auth.get_token()
        async with httpx.AsyncClient(transport=self.transport, timeout=30.0) as client:
            response = await client.request(
                method,
                f"{self.api_url}{endpoint}",
                headers={"Authorization": f"Bearer {token}", **GITHUB_HEADERS},
                **kwargs,
            )
        if response.is_error:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            logger.warning(f"{method} {endpoint} failed: {response.status_code} {message}")
            raise GitHubAPIError(response.status_code, message)
        return response

    async def _json(self, method: str, endpoint: str, **kwargs) -> Any:
        response = await self._request(method, endpoint, **kwargs)
        return response.json()

    # Git data

    async def get_ref(self, owner: str, repo: str, branch: str) -> str:
        """Return the commit sha a branch points at."""
        data = await self._json("GET", f"/repos/{owner}/{repo}/git/ref/heads/{branch}")
        return data["object"]["sha"]

    async def get_commit(self, owner: str, repo: str, sha: str) -> Commit:
        data = await self._json("GET", f"/repos/{owner}/{repo}/git/commits/{sha}")
        return Commit(
            sha=data["sha"],
            tree_sha=data["tree"]["sha"],
            parents=tuple(p["sha"] for p in data.get("parents", [])),
            message=data.get("message", ""),
            html_url=data.get("html_url"),
        )

    async def create_blob(self, owner: str, repo: str, blob: Blob) -> str:
        data = await self._json(
            "POST",
            f"/repos/{owner}/{repo}/git/blobs",
            json={"content": blob.content, "encoding": "utf-8"},
        )
        return data["sha"]

    async def create_tree(
        self,
        owner: str,
        repo: str,
        entries: Iterable[TreeEntry],
        base_tree: Optional[str] = None,
    ) -> Tree:
        entries = tuple(entries)
        payload: dict[str, Any] = {"tree": [entry.to_dict() for entry in entries]}
        if base_tree:
            payload["base_tree"] = base_tree
        data = await self._json("POST", f"/repos/{owner}/{repo}/git/trees", json=payload)
        return Tree(sha=data["sha"], entries=entries, base_tree=base_tree)

    async def create_commit(
        self,
        owner: str,
        repo: str,
        message: str,
        tree_sha: str,
        parents: list[str],
    ) -> Commit:
        data = await self._json(
            "POST",
            f"/repos/{owner}/{repo}/git/commits",
            json={"message": message, "tree": tree_sha, "parents": parents},
        )
        return Commit(
            sha=data["sha"],
            tree_sha=tree_sha,
            parents=tuple(parents),
            message=message,
            html_url=data.get("html_url"),
        )

    async def update_ref(
        self,
        owner: str,
        repo: str,
        branch: str,
        sha: str,
        force: bool = False,
    ) -> None:
        await self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/git/refs/heads/{branch}",
            json={"sha": sha, "force": force},
        )

    async def create_ref(self, owner: str, repo: str, branch: str, sha: str) -> None:
        await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )

    # Repository

    async def get_branch(self, owner: str, repo: str, branch: str) -> Optional[dict]:
        """Get branch information, or None if the branch does not exist."""
        try:
            return await self._json("GET", f"/repos/{owner}/{repo}/branches/{branch}")
        except GitHubAPIError as e:
            if e.status_code == 404:
                return None
            raise

    # Pull requests

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        head: str,
        base: str,
        title: str,
        body: str,
        draft: bool = False,
    ) -> dict:
        return await self._json(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base, "draft": draft},
        )

    async def merge_pull_request(
        self,
        owner: str,
        repo: str,
        number: int,
        method: str = "merge",
        commit_title: Optional[str] = None,
    ) -> dict:
        payload: dict[str, Any] = {"merge_method": method}
        if commit_title:
            payload["commit_title"] = commit_title
        return await self._json(
            "PUT", f"/repos/{owner}/{repo}/pulls/{number}/merge", json=payload
        )
