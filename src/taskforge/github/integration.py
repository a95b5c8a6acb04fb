"""Task-level GitHub automation.

Ties tasks and generations to branches, commits and pull requests:

- every task gets its own branch ``task/<id>/<slug>`` off the project's default branch
- a generation's files are read back from its sandbox and committed to that branch
- a task's pull request is opened from its branch and squash-merged when done
"""

import logging
import posixpath
import re
from typing import Optional

from taskforge.config import settings
from taskforge.core.sandbox import SandboxLifecycleManager
from taskforge.db import Generation, Project, Task, TaskStore
from taskforge.errors import RepositoryNotLinked
from taskforge.github.commits import GitCommitBuilder
from taskforge.github.objects import Commit

logger = logging.getLogger(__name__)


def slugify(text: str) -> str:
    """Create a branch-safe slug: lowercase, dashes, at most 50 characters."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:50]


def task_branch_name(task_id: str, title: str) -> str:
    return f"task/{task_id}/{slugify(title)}"


def parse_repo_url(url: str) -> Optional[tuple[str, str]]:
    """Extract (owner, name) from an HTTPS or SSH GitHub URL."""
    match = re.search(r"github\.com/([^/]+)/([^/.]+)", url)
    if match:
        return match.group(1), match.group(2)
    match = re.search(r"git@github\.com:([^/]+)/(.+)\.git", url)
    if match:
        return match.group(1), match.group(2)
    return None


def commit_message(task: Task, generation: Generation, paths: list[str]) -> str:
    lines = [f"feat: {task.title}", "", generation.prompt.strip(), "", "Files:"]
    lines.extend(f"- {path}" for path in paths)
    return "\n".join(lines)


def pull_request_body(task: Task, generations: list[Generation]) -> str:
    """Markdown description of a task's pull request."""
    summary = "\n".join(
        f"- {g.prompt} ({len(g.files_created or [])} files created)" for g in generations
    )
    files = list(dict.fromkeys(path for g in generations for path in (g.files_created or [])))
    changed = "\n".join(f"- {path}" for path in files)

    return f"""## Summary

{task.description or "No description provided"}

## Changes

This pull request includes AI-generated code from {len(generations)} generation(s):

{summary}

## Files Changed

{changed}

## Task Details

- **Task ID:** `{task.id}`
- **Status:** {task.status}
- **Priority:** {task.priority}
- **Branch:** `{task.branch_name}`

---

Generated by {settings.app_name}
"""


class GitHubIntegration:
    """Branch, commit and pull request automation for tasks."""

    def __init__(
        self,
        store: TaskStore,
        builder: GitCommitBuilder,
        sandboxes: SandboxLifecycleManager,
    ):
        self.store = store
        self.builder = builder
        self.sandboxes = sandboxes

    def _load_task(self, task_id: str) -> tuple[Task, Project, tuple[str, str]]:
        task = self.store.get_task(task_id)
        if task is None:
            raise ValueError(f"Task {task_id} not found")
        project = self.store.get_project(task.project_id)
        if project is None or not project.is_linked:
            raise RepositoryNotLinked(f"Project {task.project_id} is not linked to a GitHub repository")
        return task, project, (project.github_repo_owner, project.github_repo_name)

    async def ensure_task_branch(self, task_id: str) -> str:
        """Return the task's branch, creating it from the default branch if needed."""
        task, project, (owner, repo) = self._load_task(task_id)
        if task.branch_name:
            return task.branch_name

        branch = task_branch_name(task.id, task.title)
        if await self.builder.client.get_branch(owner, repo, branch) is None:
            await self.builder.create_branch(owner, repo, branch, project.default_branch)
        else:
            logger.info(f"Branch {branch} already exists, reusing it")

        self.store.update_task(task.id, branch_name=branch)
        return branch

    async def collect_files(self, sandbox_id: str, project_id: Optional[str] = None) -> dict[str, str]:
        """Read every generated file from a sandbox, keyed by path relative to the remote root."""
        if self.sandboxes.get(sandbox_id) is None:
            logger.info(f"Sandbox {sandbox_id} not registered, attempting reconnection...")
            sandbox_id = (await self.sandboxes.reconnect(sandbox_id, project_id)).id

        root = settings.sandbox_remote_root
        files = {}
        for path in await self.sandboxes.list_files(sandbox_id, root):
            files[posixpath.relpath(path, root)] = await self.sandboxes.read_file(sandbox_id, path)

        logger.info(f"Collected {len(files)} files from sandbox {sandbox_id}")
        return files

    async def commit_generation(self, generation_id: str) -> Commit:
        """Commit the files of a generation to its task's branch."""
        generation = self.store.get_generation(generation_id)
        if generation is None:
            raise ValueError(f"Generation {generation_id} not found")
        if generation.task_id is None:
            raise ValueError(f"Generation {generation_id} is not linked to a task")
        if not generation.sandbox_id:
            raise ValueError(f"Generation {generation_id} has no sandbox")

        task, project, (owner, repo) = self._load_task(generation.task_id)
        branch = await self.ensure_task_branch(task.id)

        files = await self.collect_files(generation.sandbox_id, project.id)
        if not files:
            raise ValueError("No files to commit")

        message = commit_message(task, generation, sorted(files))
        commit = await self.builder.build_commit(owner, repo, branch, files, message)
        commit_url = commit.html_url or f"https://github.com/{owner}/{repo}/commit/{commit.sha}"

        self.store.update_generation(generation.id, commit_sha=commit.sha, commit_url=commit_url)
        return Commit(
            sha=commit.sha,
            tree_sha=commit.tree_sha,
            parents=commit.parents,
            message=commit.message,
            html_url=commit_url,
        )

    async def create_pull_request(self, task_id: str) -> dict:
        """Open a pull request from the task's branch to the default branch."""
        task, project, (owner, repo) = self._load_task(task_id)
        if not task.branch_name:
            raise ValueError("Task has no branch. Generate code first.")

        body = pull_request_body(task, self.store.list_generations(task.id))
        pr = await self.builder.create_pull_request(
            owner,
            repo,
            head=task.branch_name,
            base=project.default_branch,
            title=task.title,
            body=body,
        )

        self.store.update_task(task.id, pr_url=pr["html_url"], pr_number=pr["number"])
        return {"pr_url": pr["html_url"], "pr_number": pr["number"]}

    async def merge_task(self, task_id: str) -> dict:
        """Squash-merge the task's pull request, opening it first if needed."""
        task, project, (owner, repo) = self._load_task(task_id)
        if not task.branch_name:
            raise ValueError("Task has no branch. Generate code first.")

        if task.pr_url and task.pr_number:
            logger.info(f"Merging existing PR #{task.pr_number} for task {task.id}")
            pr = {"pr_url": task.pr_url, "pr_number": task.pr_number}
        else:
            logger.info(f"Creating and merging PR for task {task.id}")
            pr = await self.create_pull_request(task.id)

        await self.builder.merge_pull_request(owner, repo, pr["pr_number"], method="squash")
        return {"merged": True, **pr}
