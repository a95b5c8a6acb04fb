"""Shared fixtures for TaskForge tests."""

import pytest

from fakes import FakeClock, FakeGitHub, FakeModel, FakeProvider
from taskforge.core.generation import GenerationStreamCoordinator
from taskforge.core.sandbox import SandboxLifecycleManager
from taskforge.db import TaskStore
from taskforge.github.auth import TokenAuth
from taskforge.github.client import GitHubRepoClient
from taskforge.github.commits import GitCommitBuilder
from taskforge.github.integration import GitHubIntegration

API_URL = "https://api.github.test"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sandboxes(provider, clock):
    return SandboxLifecycleManager(
        provider,
        clock=clock,
        ttl_seconds=3600,
        sweep_interval_seconds=300,
        server_startup_delay=0,
    )


@pytest.fixture
def store():
    return TaskStore.from_url("sqlite://")


@pytest.fixture
def project(store):
    return store.create_project(name="Landing page")


@pytest.fixture
def linked_project(store):
    return store.create_project(
        name="Web app",
        github_repo_owner="acme",
        github_repo_name="webapp",
        default_branch="main",
    )


@pytest.fixture
def github():
    return FakeGitHub(owner="acme", repo="webapp")


@pytest.fixture
def github_client(github):
    return GitHubRepoClient(
        auth=TokenAuth("test-token"),
        api_url=API_URL,
        transport=github.transport(),
    )


@pytest.fixture
def builder(github_client):
    return GitCommitBuilder(github_client)


@pytest.fixture
def integration(store, builder, sandboxes):
    return GitHubIntegration(store, builder, sandboxes)


@pytest.fixture
def model():
    return FakeModel()


@pytest.fixture
def make_coordinator(store, sandboxes, tmp_path):
    def make(model, integration=None, **kwargs):
        return GenerationStreamCoordinator(
            store,
            sandboxes,
            model,
            integration=integration,
            staging_root=tmp_path / "staging",
            **kwargs,
        )

    return make
