"""Tests for the tool menu and staging workspace."""

import pytest

from taskforge.core.tools import TOOL_DEFINITIONS, StagingWorkspace, ToolKind, check_handlers


@pytest.fixture
def workspace(tmp_path):
    ws = StagingWorkspace(tmp_path / "ws")
    ws.write_file("index.html", "<html>\n<script src='js/app.js'></script>\n</html>")
    ws.write_file("css/style.css", "body { color: red; }")
    ws.write_file("js/app.js", "const answer = 42;\nconsole.log(answer);")
    ws.write_file(".env", "SECRET=1")
    return ws


class TestToolMenu:
    """Test the closed tool menu."""

    def test_every_kind_has_a_definition(self):
        names = {definition["name"] for definition in TOOL_DEFINITIONS}
        assert names == {kind.value for kind in ToolKind}

    def test_definitions_have_schemas(self):
        for definition in TOOL_DEFINITIONS:
            assert definition["input_schema"]["type"] == "object"
            assert definition["description"]

    def test_check_handlers_accepts_full_table(self):
        check_handlers({kind: object() for kind in ToolKind})

    def test_check_handlers_names_missing_kinds(self):
        handlers = {kind: object() for kind in ToolKind if kind != ToolKind.SEARCH_CODE}

        with pytest.raises(ValueError, match="search_code"):
            check_handlers(handlers)


class TestStagingWorkspace:
    """Test read-side tools on staged files."""

    def test_write_returns_relative_path(self, workspace):
        assert workspace.write_file("/pages/about.html", "about") == "pages/about.html"
        assert (workspace.root / "pages" / "about.html").read_text() == "about"

    def test_write_outside_workspace_is_rejected(self, workspace):
        with pytest.raises(ValueError):
            workspace.write_file("../escape.txt", "nope")

    def test_read_file(self, workspace):
        assert workspace.read_file("css/style.css") == "body { color: red; }"

    def test_read_missing_file(self, workspace):
        with pytest.raises(FileNotFoundError):
            workspace.read_file("missing.txt")

    def test_list_directory_skips_hidden_files(self, workspace):
        assert workspace.list_directory().splitlines() == ["css/", "index.html", "js/"]

    def test_list_directory_recursive(self, workspace):
        assert workspace.list_directory(".", recursive=True).splitlines() == [
            "css/",
            "css/style.css",
            "index.html",
            "js/",
            "js/app.js",
        ]

    def test_list_empty_directory(self, tmp_path):
        assert StagingWorkspace(tmp_path / "empty").list_directory() == "(empty directory)"

    def test_search_code(self, workspace):
        assert workspace.search_code("answer") == "js/app.js:1: const answer = 42;\njs/app.js:2: console.log(answer);"

    def test_search_code_by_file_type(self, workspace):
        assert workspace.search_code("app", file_type="html") == "index.html:2: <script src='js/app.js'></script>"

    def test_search_without_matches(self, workspace):
        assert workspace.search_code("nothing-here") == "No matches found"

    def test_search_result_limit(self, workspace):
        workspace.write_file("many.txt", "\n".join("hit" for _ in range(10)))
        assert len(workspace.search_code("hit", max_results=3).splitlines()) == 3
