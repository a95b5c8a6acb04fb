"""TaskForge - FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from taskforge import __version__
from taskforge.agents.model import AnthropicModelClient, ModelClient
from taskforge.api import router as api_router
from taskforge.config import settings
from taskforge.core.generation import GenerationStreamCoordinator
from taskforge.core.providers import get_provider
from taskforge.core.sandbox import SandboxLifecycleManager
from taskforge.db import TaskStore
from taskforge.github.auth import get_auth
from taskforge.github.client import GitHubRepoClient
from taskforge.github.commits import GitCommitBuilder
from taskforge.github.integration import GitHubIntegration
from taskforge.github.reconciler import WebhookReconciler
from taskforge.github.webhook import router as github_webhook_router

logger = logging.getLogger(__name__)


def _default_integration(
    store: TaskStore, sandboxes: SandboxLifecycleManager
) -> Optional[GitHubIntegration]:
    try:
        client = GitHubRepoClient(get_auth())
    except ValueError as e:
        logger.warning(f"{e} - running without GitHub auto-commit")
        return None
    return GitHubIntegration(store, GitCommitBuilder(client), sandboxes)


def create_app(
    store: Optional[TaskStore] = None,
    sandboxes: Optional[SandboxLifecycleManager] = None,
    model: Optional[ModelClient] = None,
    integration: Optional[GitHubIntegration] = None,
) -> FastAPI:
    """Build the application. Collaborators not given are built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        logger.info(f"Starting {settings.app_name}...")
        settings.staging_path.mkdir(parents=True, exist_ok=True)

        state = app.state
        state.store = store or TaskStore.from_url(settings.database_url)
        state.sandboxes = sandboxes or SandboxLifecycleManager(get_provider())
        state.integration = integration or _default_integration(state.store, state.sandboxes)
        state.coordinator = GenerationStreamCoordinator(
            state.store,
            state.sandboxes,
            model or AnthropicModelClient(),
            integration=state.integration,
        )
        state.reconciler = WebhookReconciler(state.store)

        state.sandboxes.start_sweeper()
        logger.info(f"Sandbox provider: {state.sandboxes.provider.name}")

        yield

        logger.info(f"Shutting down {settings.app_name}...")
        await state.sandboxes.close_all()
        logger.info("All sandboxes closed")

    app = FastAPI(
        title=settings.app_name,
        description="AI code generation in sandboxes, committed to GitHub and tracked on a task board",
        version=__version__,
        lifespan=lifespan,
    )

    app.include_router(github_webhook_router)
    app.include_router(api_router)

    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        state = request.app.state
        return {
            "status": "healthy",
            "version": __version__,
            "sandbox_provider": state.sandboxes.provider.name,
            "sandboxes": state.sandboxes.stats(),
            "github": state.integration is not None,
        }

    return app


app = create_app()


# =============================================================================
# Development server
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "taskforge.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
