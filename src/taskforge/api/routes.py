"""HTTP API for generations, the task board and sandboxes.

Endpoints:
- POST   /api/generate                                  stream a generation (SSE)
- PATCH  /api/projects/{project_id}/tasks/{task_id}/move move a task card
- POST   /api/tasks/{task_id}/pull-request               open the task's PR
- POST   /api/projects/{project_id}/sandbox              create or reconnect a sandbox
- DELETE /api/sandboxes/{sandbox_id}                     close a sandbox
- GET    /api/sandboxes/stats                            registry counts
"""

import logging
from contextlib import aclosing
from typing import AsyncIterator, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from taskforge.core.generation import GenerationContext, GenerationStreamCoordinator
from taskforge.core.sandbox import SandboxLifecycleManager
from taskforge.core.task_state import Trigger, user_move
from taskforge.db import Generation, TaskStore
from taskforge.errors import (
    GenerationInProgress,
    GitHubAPIError,
    ProvisionFailure,
    RepositoryNotLinked,
)
from taskforge.github.integration import GitHubIntegration

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["api"])


# =============================================================================
# Dependencies
# =============================================================================


def get_store(request: Request) -> TaskStore:
    return request.app.state.store


def get_sandboxes(request: Request) -> SandboxLifecycleManager:
    return request.app.state.sandboxes


def get_coordinator(request: Request) -> GenerationStreamCoordinator:
    return request.app.state.coordinator


def get_integration(request: Request) -> Optional[GitHubIntegration]:
    return request.app.state.integration


# =============================================================================
# Models
# =============================================================================


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: Optional[str] = None
    project_id: Optional[str] = Field(default=None, alias="projectId")
    task_id: Optional[str] = Field(default=None, alias="taskId")
    auto_commit: bool = Field(default=True, alias="autoCommit")


class MoveTaskRequest(BaseModel):
    column: str


# =============================================================================
# Generation
# =============================================================================


@router.post("/generate")
async def generate(
    body: GenerateRequest,
    coordinator: GenerationStreamCoordinator = Depends(get_coordinator),
):
    """Run a generation and stream its progress as server-sent events."""
    if not body.prompt or not body.prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt is required")
    if body.task_id and not body.project_id:
        raise HTTPException(status_code=400, detail="projectId is required when taskId is provided")
    if not body.project_id:
        raise HTTPException(status_code=400, detail="projectId is required")

    context = GenerationContext(
        project_id=body.project_id,
        task_id=body.task_id,
        auto_commit=body.auto_commit,
    )
    try:
        generation = coordinator.prepare(body.prompt, context)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GenerationInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))

    async def event_stream() -> AsyncIterator[str]:
        async with aclosing(coordinator.run(generation, context)) as events:
            async for event in events:
                yield event.to_sse()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def _run_in_background(
    coordinator: GenerationStreamCoordinator,
    generation: Generation,
    context: GenerationContext,
) -> None:
    async for event in coordinator.run(generation, context):
        logger.debug(f"Generation {generation.id}: {event.event} {event.to_payload()}")


async def _merge_in_background(integration: GitHubIntegration, task_id: str) -> None:
    try:
        result = await integration.merge_task(task_id)
        logger.info(f"Merged PR #{result['pr_number']} for task {task_id}")
    except (GitHubAPIError, RepositoryNotLinked, ValueError) as e:
        logger.error(f"Failed to merge task {task_id}: {e}")


# =============================================================================
# Task board
# =============================================================================


@router.patch("/projects/{project_id}/tasks/{task_id}/move")
async def move_task(
    project_id: str,
    task_id: str,
    body: MoveTaskRequest,
    background_tasks: BackgroundTasks,
    store: TaskStore = Depends(get_store),
    coordinator: GenerationStreamCoordinator = Depends(get_coordinator),
    integration: Optional[GitHubIntegration] = Depends(get_integration),
):
    """Move a task card to another column.

    Moving into building starts a generation for the task; moving into done
    merges its pull request.
    """
    task = store.get_task(task_id)
    if task is None or task.project_id != project_id:
        raise HTTPException(status_code=404, detail="Task not found")
    if task.state is None:
        raise HTTPException(status_code=409, detail=f"Task has unrecognized state {task.status}")

    _, trigger = user_move(task.state, body.column)
    generation = context = None
    if trigger == Trigger.START_GENERATION:
        # The pending generation is recorded before the card moves
        context = GenerationContext(project_id=project_id, task_id=task_id)
        try:
            generation = coordinator.prepare(task.description or task.title, context)
        except GenerationInProgress as e:
            raise HTTPException(status_code=409, detail=str(e))

    result = store.transition_task(task_id, lambda state: user_move(state, body.column)[0])
    if result is None:
        raise HTTPException(status_code=404, detail="Task not found")
    _, _, task = result

    response = {
        "task_id": task.id,
        "status": task.status,
        "column": task.column,
        "build_status": task.build_status,
        "trigger": trigger.value,
    }

    if generation is not None:
        background_tasks.add_task(_run_in_background, coordinator, generation, context)
        response["generation_id"] = generation.id

    elif trigger == Trigger.MERGE:
        project = store.get_project(project_id)
        if integration is None or project is None or not project.is_linked or not task.branch_name:
            response["warning"] = "Task moved to done but there is no branch to merge"
        else:
            background_tasks.add_task(_merge_in_background, integration, task_id)

    return response


@router.post("/tasks/{task_id}/pull-request")
async def create_pull_request(
    task_id: str,
    store: TaskStore = Depends(get_store),
    integration: Optional[GitHubIntegration] = Depends(get_integration),
):
    """Open a pull request from the task's branch."""
    if store.get_task(task_id) is None:
        raise HTTPException(status_code=404, detail="Task not found")
    if integration is None:
        raise HTTPException(status_code=503, detail="GitHub integration not configured")

    try:
        return await integration.create_pull_request(task_id)
    except (RepositoryNotLinked, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GitHubAPIError as e:
        raise HTTPException(status_code=502, detail=str(e))


# =============================================================================
# Sandboxes
# =============================================================================


@router.post("/projects/{project_id}/sandbox")
async def create_sandbox(
    project_id: str,
    store: TaskStore = Depends(get_store),
    sandboxes: SandboxLifecycleManager = Depends(get_sandboxes),
):
    """Get a live sandbox for the project, reusing its previous one when possible."""
    project = store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")

    try:
        if project.sandbox_id:
            sandbox = await sandboxes.reconnect(project.sandbox_id, project_id)
        else:
            sandbox = await sandboxes.create(project_id)
    except ProvisionFailure as e:
        raise HTTPException(status_code=502, detail=str(e))

    store.update_project(project_id, sandbox_id=sandbox.id, sandbox_status="active")
    return {
        "sandbox_id": sandbox.id,
        "status": sandbox.status.value,
        "created_at": sandbox.created_at.isoformat(),
        "expires_at": sandbox.expires_at.isoformat(),
    }


@router.delete("/sandboxes/{sandbox_id}")
async def close_sandbox(
    sandbox_id: str,
    store: TaskStore = Depends(get_store),
    sandboxes: SandboxLifecycleManager = Depends(get_sandboxes),
):
    """Close a sandbox. Closing an unknown or already closed sandbox is a no-op."""
    sandbox = sandboxes.get(sandbox_id)
    closed = await sandboxes.close(sandbox_id)
    if closed and sandbox.owner_project_id:
        project = store.get_project(sandbox.owner_project_id)
        if project and project.sandbox_id == sandbox_id:
            store.update_project(project.id, sandbox_status="inactive")
    return {"sandbox_id": sandbox_id, "closed": closed}


@router.get("/sandboxes/stats")
async def sandbox_stats(sandboxes: SandboxLifecycleManager = Depends(get_sandboxes)):
    return sandboxes.stats()
