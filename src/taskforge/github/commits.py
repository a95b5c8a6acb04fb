"""Commit construction from content-addressed objects.

A commit is built in six steps: read the head ref, read its tree, upload one
blob per file, create a tree overlaying the blobs on the head tree, create a
commit whose only parent is the head, and finally move the ref. Steps one to
five only create unreferenced objects on the host. The ref update is a
compare-and-swap: if the branch moved since its head was captured the build
fails with ``GitConflict`` and nothing is written to the branch.
"""

import logging
from typing import Mapping, Optional

from taskforge.errors import GitConflict, GitHubAPIError
from taskforge.github.client import GitHubRepoClient
from taskforge.github.objects import Commit, CommitPlan, TreeEntry

logger = logging.getLogger(__name__)

MERGE_METHODS = ("merge", "squash", "rebase")


class GitCommitBuilder:
    """Builds fast-forward commits and automates branches and pull requests."""

    def __init__(self, client: GitHubRepoClient):
        self.client = client

    async def build_commit(
        self,
        owner: str,
        repo: str,
        branch: str,
        files: Mapping[str, str],
        message: str,
        base_sha: Optional[str] = None,
    ) -> Commit:
        """Commit ``files`` on top of the head of ``branch``.

        Args:
            owner: Repository owner
            repo: Repository name
            branch: Branch to advance
            files: Mapping of repository path to file content
            message: Commit message
            base_sha: Head the caller already observed; read from the branch when omitted

        Raises:
            GitConflict: if the branch no longer points at the captured head
        """
        if not files:
            raise ValueError("No files to commit")

        sha0 = base_sha or await self.client.get_ref(owner, repo, branch)
        plan = CommitPlan(branch=branch, base_sha=sha0, files=dict(files))
        logger.info(f"Building commit on {owner}/{repo}@{branch} from {sha0[:7]} ({len(files)} files)")

        head = await self.client.get_commit(owner, repo, sha0)

        entries = []
        for blob in plan.blobs:
            sha = await self.client.create_blob(owner, repo, blob)
            if sha != blob.sha:
                raise GitHubAPIError(502, f"Blob hash mismatch for {blob.path}: {sha} != {blob.sha}")
            entries.append(TreeEntry.for_blob(blob))

        tree = await self.client.create_tree(owner, repo, entries, base_tree=head.tree_sha)
        commit = await self.client.create_commit(owner, repo, message, tree.sha, [sha0])

        await self.update_ref(owner, repo, branch, expected_sha=sha0, new_sha=commit.sha)
        logger.info(f"Committed {commit.sha[:7]} to {owner}/{repo}@{branch}")
        return commit

    async def update_ref(
        self,
        owner: str,
        repo: str,
        branch: str,
        expected_sha: str,
        new_sha: str,
    ) -> None:
        """Move ``branch`` from ``expected_sha`` to ``new_sha`` or raise ``GitConflict``.

        The host only accepts fast-forward updates, so a ref that moves
        between the check and the update is still rejected.
        """
        current = await self.client.get_ref(owner, repo, branch)
        if current != expected_sha:
            raise GitConflict(branch, expected_sha, current)
        try:
            await self.client.update_ref(owner, repo, branch, new_sha, force=False)
        except GitHubAPIError as e:
            if e.status_code == 422:
                raise GitConflict(branch, expected_sha) from e
            raise

    async def create_branch(
        self,
        owner: str,
        repo: str,
        new_branch: str,
        from_branch: str,
    ) -> str:
        """Create ``new_branch`` at the current head of ``from_branch``.

        Returns:
            The sha the new branch points at
        """
        sha = await self.client.get_ref(owner, repo, from_branch)
        await self.client.create_ref(owner, repo, new_branch, sha)
        logger.info(f"Created branch {new_branch} from {from_branch} at {sha[:7]}")
        return sha

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
        pr = await self.client.create_pull_request(owner, repo, head, base, title, body, draft)
        logger.info(f"Created PR #{pr['number']}: {pr.get('html_url')}")
        return pr

    async def merge_pull_request(
        self,
        owner: str,
        repo: str,
        number: int,
        method: str = "merge",
        commit_title: Optional[str] = None,
    ) -> dict:
        if method not in MERGE_METHODS:
            raise ValueError(f"Unknown merge method: {method}")
        result = await self.client.merge_pull_request(owner, repo, number, method, commit_title)
        logger.info(f"Merged PR #{number} ({method})")
        return result
