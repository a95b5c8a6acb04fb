"""Domain errors for TaskForge."""

from typing import Optional


class TaskForgeError(Exception):
    """Base class for all TaskForge errors."""


class ProvisionFailure(TaskForgeError):
    """A remote sandbox could not be created or a command in it could not run."""


class SandboxNotFound(TaskForgeError):
    """No registered sandbox has the requested id."""

    def __init__(self, sandbox_id: str):
        super().__init__(f"Sandbox {sandbox_id} not found")
        self.sandbox_id = sandbox_id


class SyncSkipped(TaskForgeError):
    """A staged file vanished before it could be flushed to the sandbox."""

    def __init__(self, path: str):
        super().__init__(f"Staged file no longer exists: {path}")
        self.path = path


class GitConflict(TaskForgeError):
    """The branch ref moved between reading the head and updating it."""

    def __init__(self, branch: str, expected_sha: str, actual_sha: Optional[str] = None):
        detail = f" (now at {actual_sha})" if actual_sha else ""
        super().__init__(
            f"Branch {branch} is no longer at {expected_sha}{detail}; "
            "recompute from the new head and retry"
        )
        self.branch = branch
        self.expected_sha = expected_sha
        self.actual_sha = actual_sha


class GitHubAPIError(TaskForgeError):
    """The git host answered with a non-success status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"GitHub API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class RepositoryNotLinked(TaskForgeError):
    """The project is not linked to a GitHub repository."""


class SignatureInvalid(TaskForgeError):
    """Webhook signature is missing or does not match the payload."""


class UnmappedEvent(TaskForgeError):
    """No task matches the branch and PR number of an incoming webhook."""

    def __init__(self, branch_name: Optional[str], pr_number: Optional[int]):
        super().__init__(f"No task for branch {branch_name} and PR #{pr_number}")
        self.branch_name = branch_name
        self.pr_number = pr_number


class GenerationInProgress(TaskForgeError):
    """The task already has a running generation."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} already has a generation running")
        self.task_id = task_id


class ToolError(TaskForgeError):
    """A tool call made by the model failed. The message is returned to the model."""


class GenerationAborted(TaskForgeError):
    """The generation loop gave up (error budget or turn cap exhausted)."""
