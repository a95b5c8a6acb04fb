"""Tests for task-level GitHub automation."""

import pytest

from taskforge.errors import GitHubAPIError, RepositoryNotLinked
from taskforge.github.integration import parse_repo_url, slugify, task_branch_name


@pytest.fixture
def task(store, linked_project):
    return store.create_task(
        project_id=linked_project.id,
        title="Add Contact Form!",
        description="A contact form with validation",
        status="in_progress",
    )


async def generated(store, sandboxes, task, files):
    """Record a generation whose sandbox holds ``files``."""
    sandbox = await sandboxes.create(task.project_id)
    for path, content in files.items():
        await sandboxes.write_file(sandbox.id, f"/home/user/{path}", content)
    return store.create_generation(
        project_id=task.project_id,
        task_id=task.id,
        prompt="contact form",
        sandbox_id=sandbox.id,
        files_created=sorted(files),
    )


class TestHelpers:
    """Test naming helpers."""

    def test_slugify(self):
        assert slugify("Add Contact Form!") == "add-contact-form"
        assert slugify("  --Ünïcode & stuff--  ") == "n-code-stuff"
        assert len(slugify("x" * 80)) == 50

    def test_task_branch_name(self):
        assert task_branch_name("abc", "Add Contact Form!") == "task/abc/add-contact-form"

    @pytest.mark.parametrize(
        "url",
        [
            "https://github.com/acme/webapp",
            "https://github.com/acme/webapp.git",
            "git@github.com:acme/webapp.git",
        ],
    )
    def test_parse_repo_url(self, url):
        assert parse_repo_url(url) == ("acme", "webapp")

    def test_parse_other_url(self):
        assert parse_repo_url("https://gitlab.com/acme/webapp") is None


class TestTaskBranch:
    """Test per-task branches."""

    @pytest.mark.asyncio
    async def test_branch_is_created_and_recorded(self, integration, store, task, github):
        branch = await integration.ensure_task_branch(task.id)

        assert branch == f"task/{task.id}/add-contact-form"
        assert github.refs[branch] == github.refs["main"]
        assert store.get_task(task.id).branch_name == branch

    @pytest.mark.asyncio
    async def test_existing_branch_is_reused(self, integration, task, github):
        branch = task_branch_name(task.id, task.title)
        github.refs[branch] = github.refs["main"]

        assert await integration.ensure_task_branch(task.id) == branch

    @pytest.mark.asyncio
    async def test_unlinked_project(self, integration, store, project):
        task = store.create_task(project_id=project.id, title="Offline")

        with pytest.raises(RepositoryNotLinked):
            await integration.ensure_task_branch(task.id)

    @pytest.mark.asyncio
    async def test_missing_task(self, integration):
        with pytest.raises(ValueError):
            await integration.ensure_task_branch("missing")


class TestCommitGeneration:
    """Test committing a generation's sandbox files."""

    @pytest.mark.asyncio
    async def test_commit_generation(self, integration, store, sandboxes, task, github):
        generation = await generated(
            store, sandboxes, task, {"index.html": "<form></form>", "js/form.js": "validate()"}
        )

        commit = await integration.commit_generation(generation.id)

        branch = store.get_task(task.id).branch_name
        assert github.refs[branch] == commit.sha
        assert github.commit_files(commit.sha) == {
            "index.html": "<form></form>",
            "js/form.js": "validate()",
        }
        assert github.commits[commit.sha]["message"].startswith("feat: Add Contact Form!")
        assert store.get_generation(generation.id).commit_sha == commit.sha

    @pytest.mark.asyncio
    async def test_collect_files_after_restart(self, integration, store, sandboxes, task, provider):
        generation = await generated(store, sandboxes, task, {"index.html": "<form></form>"})
        # Registry lost (restart) but the remote sandbox is still alive
        sandboxes._sandboxes.clear()

        files = await integration.collect_files(generation.sandbox_id, task.project_id)

        assert files == {"index.html": "<form></form>"}

    @pytest.mark.asyncio
    async def test_generation_without_task(self, integration, store, linked_project):
        generation = store.create_generation(project_id=linked_project.id, prompt="x", sandbox_id="sbx")

        with pytest.raises(ValueError):
            await integration.commit_generation(generation.id)


class TestPullRequests:
    """Test opening and merging task pull requests."""

    @pytest.mark.asyncio
    async def test_create_pull_request(self, integration, store, sandboxes, task, github):
        generation = await generated(store, sandboxes, task, {"index.html": "<form></form>"})
        await integration.commit_generation(generation.id)

        result = await integration.create_pull_request(task.id)

        pr = github.pulls[result["pr_number"]]
        updated = store.get_task(task.id)
        assert pr["head"] == updated.branch_name
        assert pr["base"] == "main"
        assert pr["title"] == "Add Contact Form!"
        assert "A contact form with validation" in pr["body"]
        assert "- index.html" in pr["body"]
        assert updated.pr_number == result["pr_number"]
        assert updated.pr_url == result["pr_url"]

    @pytest.mark.asyncio
    async def test_pull_request_needs_branch(self, integration, task):
        with pytest.raises(ValueError):
            await integration.create_pull_request(task.id)

    @pytest.mark.asyncio
    async def test_merge_opens_pull_request_first(self, integration, store, task, github):
        await integration.ensure_task_branch(task.id)

        result = await integration.merge_task(task.id)

        assert result["merged"] is True
        assert github.pulls[result["pr_number"]]["merge_method"] == "squash"
        assert store.get_task(task.id).pr_number == result["pr_number"]

    @pytest.mark.asyncio
    async def test_merge_existing_pull_request(self, integration, task, github):
        await integration.ensure_task_branch(task.id)
        opened = await integration.create_pull_request(task.id)

        result = await integration.merge_task(task.id)

        assert result["pr_number"] == opened["pr_number"]
        assert len(github.pulls) == 1

    @pytest.mark.asyncio
    async def test_merge_failure_propagates(self, integration, task, github):
        await integration.ensure_task_branch(task.id)
        github.fail_merge = True

        with pytest.raises(GitHubAPIError):
            await integration.merge_task(task.id)
