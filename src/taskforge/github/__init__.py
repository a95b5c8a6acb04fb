"""GitHub integration for TaskForge.

Commit construction, branch and pull request automation, and the webhook
endpoint that reconciles pull request events with the task board.
"""

from taskforge.github.commits import GitCommitBuilder
from taskforge.github.integration import GitHubIntegration, parse_repo_url, slugify
from taskforge.github.reconciler import WebhookReconciler, verify
from taskforge.github.webhook import router as webhook_router

__all__ = [
    "GitCommitBuilder",
    "GitHubIntegration",
    "WebhookReconciler",
    "parse_repo_url",
    "slugify",
    "verify",
    "webhook_router",
]
