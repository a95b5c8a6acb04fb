"""Tests for staged file sync."""

import asyncio

import pytest

from taskforge.core.file_sync import FileSyncQueue, relative_to_root


@pytest.fixture
def staging(tmp_path):
    root = tmp_path / "staging"
    root.mkdir()
    return root


def stage(root, relative, content):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class TestRelativePaths:
    """Test path normalization."""

    def test_relative_path(self, staging):
        assert relative_to_root(staging, "css/style.css") == "css/style.css"
        assert relative_to_root(staging, "./css/../index.html") == "index.html"

    def test_absolute_path_inside_root(self, staging):
        assert relative_to_root(staging, str(staging / "js" / "app.js")) == "js/app.js"

    def test_leading_slashes_are_stripped(self, staging):
        assert relative_to_root(staging, "/index.html") == "index.html"

    @pytest.mark.parametrize("path", ["", ".", "..", "../secrets.txt", "a/../../b"])
    def test_paths_outside_root_are_rejected(self, staging, path):
        with pytest.raises(ValueError):
            relative_to_root(staging, path)


class TestFileSyncQueue:
    """Test queueing and flushing."""

    @pytest.mark.asyncio
    async def test_flush_writes_under_remote_root(self, sandboxes, provider, staging):
        sandbox = await sandboxes.create()
        queue = FileSyncQueue(sandboxes, sandbox.id, staging, remote_root="/home/user")
        stage(staging, "css/style.css", "body {}")

        relative = queue.enqueue(str(staging / "css" / "style.css"))
        remote = await queue.flush(relative)

        assert remote == "/home/user/css/style.css"
        assert provider.handles[sandbox.id].files[remote] == "body {}"
        assert queue.pending() == []
        assert queue.synced_paths() == ["css/style.css"]

    @pytest.mark.asyncio
    async def test_flush_sends_latest_content(self, sandboxes, provider, staging):
        sandbox = await sandboxes.create()
        queue = FileSyncQueue(sandboxes, sandbox.id, staging, remote_root="/home/user")

        stage(staging, "index.html", "v1")
        queue.enqueue("index.html")
        stage(staging, "index.html", "v2")
        await queue.flush("index.html")

        assert provider.handles[sandbox.id].files["/home/user/index.html"] == "v2"

    @pytest.mark.asyncio
    async def test_missing_staged_file_is_skipped(self, sandboxes, provider, staging):
        sandbox = await sandboxes.create()
        queue = FileSyncQueue(sandboxes, sandbox.id, staging, remote_root="/home/user")

        queue.enqueue("gone.txt")

        assert await queue.flush("gone.txt") is None
        assert provider.handles[sandbox.id].files == {}
        assert queue.synced_paths() == []
        assert queue.skipped_paths() == ["gone.txt"]

    @pytest.mark.asyncio
    async def test_skipped_flush_keeps_earlier_copy(self, sandboxes, provider, staging):
        sandbox = await sandboxes.create()
        queue = FileSyncQueue(sandboxes, sandbox.id, staging, remote_root="/home/user")
        stage(staging, "about.html", "<h1>About</h1>")
        await queue.flush("about.html")

        (staging / "about.html").unlink()

        assert await queue.flush("about.html") is None
        assert await queue.flush_all() == ["about.html"]
        assert queue.skipped_paths() == ["about.html"]
        assert provider.handles[sandbox.id].files["/home/user/about.html"] == "<h1>About</h1>"

    @pytest.mark.asyncio
    async def test_concurrent_flushes_of_one_path(self, sandboxes, provider, staging):
        sandbox = await sandboxes.create()
        queue = FileSyncQueue(sandboxes, sandbox.id, staging, remote_root="/home/user")
        stage(staging, "app.js", "final")

        await asyncio.gather(*(queue.flush("app.js") for _ in range(5)))

        assert provider.handles[sandbox.id].files == {"/home/user/app.js": "final"}

    @pytest.mark.asyncio
    async def test_flush_all_syncs_every_staged_file(self, sandboxes, provider, staging):
        sandbox = await sandboxes.create()
        queue = FileSyncQueue(sandboxes, sandbox.id, staging, remote_root="/home/user")
        stage(staging, "index.html", "<html></html>")
        stage(staging, "css/style.css", "body {}")
        stage(staging, "js/app.js", "console.log(1)")
        queue.enqueue("index.html")
        queue.enqueue("deleted.txt")

        synced = await queue.flush_all()

        assert synced == ["css/style.css", "index.html", "js/app.js"]
        assert sorted(provider.handles[sandbox.id].files) == [
            "/home/user/css/style.css",
            "/home/user/index.html",
            "/home/user/js/app.js",
        ]
        assert queue.pending() == []

    def test_remote_path(self, sandboxes, staging):
        queue = FileSyncQueue(sandboxes, "sbx-1", staging, remote_root="/srv/app")
        assert queue.remote_path("./a/b.txt") == "/srv/app/a/b.txt"
        assert queue.local_path("a/b.txt") == staging / "a" / "b.txt"
