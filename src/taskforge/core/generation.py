"""Generation stream coordinator.

Drives the model's tool-use loop for one generation and turns it into an
ordered stream of progress events:

1. Provision a sandbox for the project
2. Send the conversation and the tool menu to the model
3. Run every requested tool and feed the results back, until the model stops
   asking for tools
4. Flush all staged files, start the preview server, optionally commit to
   GitHub, and emit ``complete``

A failing tool produces an ``error`` event and the loop goes on so the model
can correct itself. The loop gives up after too many errors in a row or too
many turns. Any stream that ends without ``complete`` is a failed generation.
"""

import asyncio
import logging
import shutil
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from taskforge.agents.model import ModelClient, ToolCall
from taskforge.config import settings
from taskforge.core.events import (
    CompleteEvent,
    ErrorEvent,
    Event,
    StatusEvent,
    TextEvent,
    ToolEvent,
)
from taskforge.core.file_sync import FileSyncQueue
from taskforge.core.sandbox import SandboxLifecycleManager
from taskforge.core.task_state import (
    generation_completed,
    generation_failed,
    generation_started,
)
from taskforge.core.tools import TOOL_DEFINITIONS, StagingWorkspace, ToolKind, check_handlers
from taskforge.db import Generation, GenerationStatus, TaskStore
from taskforge.errors import GenerationAborted, GenerationInProgress, ToolError
from taskforge.github.integration import GitHubIntegration

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert software engineer building a project inside a sandbox.

Use the tools to create and inspect files. Every file you write is copied into
the sandbox immediately and served from its root directory by a static web
server once you are done. Use run_command to check your work inside the sandbox.

When the project is complete, reply with a short summary and no tool calls."""

USER_PROMPT = """Create a complete project based on this description: "{description}"

Please create the necessary files (HTML, CSS, and JavaScript if needed) for a fully functional project.
Save all files relative to the workspace root.

Requirements:
- Create clean, well-structured code
- Include styling
- Make it responsive and modern
- Ensure all files are properly linked

Start by creating the files now."""


@dataclass
class GenerationContext:
    """Where a generation runs and what it is for."""

    project_id: str
    task_id: Optional[str] = None
    auto_commit: bool = True


@dataclass
class GenerationRun:
    """Mutable state of one running generation."""

    generation: Generation
    context: GenerationContext
    sandbox_id: str
    workspace: StagingWorkspace
    queue: FileSyncQueue
    files_created: list[str] = field(default_factory=list)


ToolHandler = Callable[[GenerationRun, dict[str, Any]], Awaitable[str]]


class GenerationStreamCoordinator:
    """Runs generations and streams their progress."""

    def __init__(
        self,
        store: TaskStore,
        sandboxes: SandboxLifecycleManager,
        model: ModelClient,
        integration: Optional[GitHubIntegration] = None,
        staging_root: Optional[Path] = None,
        max_turns: Optional[int] = None,
        max_consecutive_errors: Optional[int] = None,
    ):
        self.store = store
        self.sandboxes = sandboxes
        self.model = model
        self.integration = integration
        self.staging_root = staging_root or settings.staging_path
        self.max_turns = max_turns or settings.generation_max_turns
        self.max_consecutive_errors = (
            max_consecutive_errors or settings.generation_max_consecutive_errors
        )

        self._handlers: dict[ToolKind, ToolHandler] = {
            ToolKind.WRITE_FILE: self._write_file,
            ToolKind.READ_FILE: self._read_file,
            ToolKind.LIST_DIRECTORY: self._list_directory,
            ToolKind.SEARCH_CODE: self._search_code,
            ToolKind.RUN_COMMAND: self._run_command,
        }
        check_handlers(self._handlers)

    # =========================================================================
    # Entry points
    # =========================================================================

    def prepare(self, prompt: str, context: GenerationContext) -> Generation:
        """Validate a request and record a pending generation.

        Raises:
            ValueError: if the prompt is empty
            LookupError: if the project or task does not exist
            GenerationInProgress: if the task already has an active generation
        """
        if not prompt or not prompt.strip():
            raise ValueError("Prompt is required")

        project = self.store.get_project(context.project_id)
        if project is None:
            raise LookupError(f"Project {context.project_id} not found")

        if context.task_id:
            task = self.store.get_task(context.task_id)
            if task is None or task.project_id != project.id:
                raise LookupError(f"Task {context.task_id} not found in project {project.id}")
            if self.store.active_generation_for_task(task.id):
                raise GenerationInProgress(task.id)

        generation = self.store.create_generation(
            project_id=project.id,
            task_id=context.task_id,
            prompt=prompt,
            agent_model=self.model.model,
        )
        logger.info(f"Created generation {generation.id} for project {project.id}")
        return generation

    async def start(self, prompt: str, context: GenerationContext) -> AsyncIterator[Event]:
        """Validate, then stream the generation's events."""
        generation = self.prepare(prompt, context)
        async with aclosing(self.run(generation, context)) as events:
            async for event in events:
                yield event

    async def run(self, generation: Generation, context: GenerationContext) -> AsyncIterator[Event]:
        """Stream the events of a prepared generation."""
        self.store.update_generation(generation.id, status=GenerationStatus.RUNNING)
        if context.task_id:
            self.store.transition_task(context.task_id, generation_started)

        run: Optional[GenerationRun] = None
        try:
            yield StatusEvent(message="Creating sandbox...", kind="info")
            sandbox = await self.sandboxes.create(context.project_id)
            self.store.update_generation(generation.id, sandbox_id=sandbox.id)
            self.store.update_project(
                context.project_id, sandbox_id=sandbox.id, sandbox_status="active"
            )
            yield StatusEvent(message="Sandbox ready", kind="sandbox", sandbox_id=sandbox.id)

            workspace = StagingWorkspace(self.staging_root / generation.id)
            run = GenerationRun(
                generation=generation,
                context=context,
                sandbox_id=sandbox.id,
                workspace=workspace,
                queue=FileSyncQueue(self.sandboxes, sandbox.id, workspace.root),
            )

            async for event in self._tool_loop(run):
                yield event

            async for event in self._finish(run):
                yield event

        except (GeneratorExit, asyncio.CancelledError):
            logger.info(f"Generation {generation.id} cancelled by the client")
            self._mark_failed(generation, context, run, "Cancelled by client")
            raise
        except Exception as e:
            logger.error(f"Generation {generation.id} failed: {e}")
            self._mark_failed(generation, context, run, str(e))
            if run is not None:
                await self.sandboxes.close(run.sandbox_id)
            yield ErrorEvent(message=str(e))
        finally:
            if run is not None:
                shutil.rmtree(run.workspace.root, ignore_errors=True)

    # =========================================================================
    # Loop
    # =========================================================================

    async def _tool_loop(self, run: GenerationRun) -> AsyncIterator[Event]:
        messages: list[dict[str, Any]] = [
            {"role": "user", "content": USER_PROMPT.format(description=run.generation.prompt)}
        ]
        consecutive_errors = 0

        for turn in range(1, self.max_turns + 1):
            response = await self.model.complete(SYSTEM_PROMPT, messages, TOOL_DEFINITIONS)
            messages.append({"role": "assistant", "content": response.content})

            for text in response.text:
                yield TextEvent(content=text)

            calls = response.tool_calls
            if not calls:
                logger.info(f"Generation {run.generation.id} finished after {turn} turns")
                return

            results = []
            for call in calls:
                yield ToolEvent(name=call.name, action=describe_tool_call(call))
                try:
                    output = await self._dispatch(run, call)
                except Exception as e:
                    consecutive_errors += 1
                    logger.warning(f"Tool {call.name} failed ({consecutive_errors} in a row): {e}")
                    yield ErrorEvent(message=f"{call.name} failed: {e}")
                    results.append(
                        {
                            "type": "tool_result",
                            "tool_use_id": call.id,
                            "content": f"Error: {e}",
                            "is_error": True,
                        }
                    )
                    if consecutive_errors >= self.max_consecutive_errors:
                        raise GenerationAborted(
                            f"Stopped after {consecutive_errors} consecutive tool errors"
                        )
                else:
                    consecutive_errors = 0
                    results.append(
                        {"type": "tool_result", "tool_use_id": call.id, "content": output}
                    )

            messages.append({"role": "user", "content": results})

        raise GenerationAborted(f"Stopped after {self.max_turns} turns without finishing")

    async def _dispatch(self, run: GenerationRun, call: ToolCall) -> str:
        try:
            kind = ToolKind(call.name)
        except ValueError:
            raise ToolError(f"Unknown tool: {call.name}") from None
        return await self._handlers[kind](run, call.input)

    async def _finish(self, run: GenerationRun) -> AsyncIterator[Event]:
        generation, context = run.generation, run.context

        yield StatusEvent(message="Syncing files to sandbox...", kind="info")
        synced = await run.queue.flush_all()
        logger.info(f"Final sync of generation {generation.id}: {len(synced)} files")

        yield StatusEvent(message="Starting web server...", kind="info")
        sandbox_url = await self.sandboxes.start_web_server(run.sandbox_id)
        self.store.update_generation(generation.id, files_created=list(run.files_created))

        branch_name = commit_sha = commit_url = None
        if context.task_id and context.auto_commit and self._is_linked(context.project_id):
            yield StatusEvent(message="Committing to GitHub...", kind="github")
            try:
                branch_name = await self.integration.ensure_task_branch(context.task_id)
                commit = await self.integration.commit_generation(generation.id)
                commit_sha, commit_url = commit.sha, commit.html_url
                yield StatusEvent(
                    message=f"Committed {commit_sha[:7]} to {branch_name}", kind="github"
                )
            except Exception as e:
                # Generated files stay in the sandbox; the commit can be retried later
                logger.warning(f"GitHub commit failed for generation {generation.id}: {e}")
                yield StatusEvent(message=f"GitHub commit failed: {e}", kind="warning")

        # Nothing may follow this but ``complete``
        self.store.finish_generation(
            generation.id, GenerationStatus.COMPLETED, files_created=run.files_created
        )
        if context.task_id:
            fields = {"branch_name": branch_name} if branch_name else {}
            self.store.transition_task(context.task_id, generation_completed, **fields)

        yield CompleteEvent(
            message="Generation complete",
            sandbox_id=run.sandbox_id,
            sandbox_url=sandbox_url,
            files_created=list(run.files_created),
            generation_id=generation.id,
            commit_sha=commit_sha,
            commit_url=commit_url,
            branch_name=branch_name,
        )

    def _is_linked(self, project_id: str) -> bool:
        if self.integration is None:
            return False
        project = self.store.get_project(project_id)
        return bool(project and project.is_linked)

    def _mark_failed(
        self,
        generation: Generation,
        context: GenerationContext,
        run: Optional[GenerationRun],
        message: str,
    ) -> None:
        files = list(run.files_created) if run else []
        stored = self.store.finish_generation(
            generation.id, GenerationStatus.FAILED, error_message=message, files_created=files
        )
        # A generation that already completed keeps its task state
        if context.task_id and stored is not None and stored.status == GenerationStatus.FAILED:
            self.store.transition_task(context.task_id, generation_failed)

    # =========================================================================
    # Tool handlers
    # =========================================================================

    async def _write_file(self, run: GenerationRun, tool_input: dict[str, Any]) -> str:
        content = tool_input.get("content", "")
        relative = run.workspace.write_file(tool_input["path"], content)
        run.queue.enqueue(relative)
        await run.queue.flush(relative)
        if relative not in run.files_created:
            run.files_created.append(relative)
        return f"Wrote {relative} ({len(content)} characters)"

    async def _read_file(self, run: GenerationRun, tool_input: dict[str, Any]) -> str:
        return run.workspace.read_file(tool_input["path"])

    async def _list_directory(self, run: GenerationRun, tool_input: dict[str, Any]) -> str:
        return run.workspace.list_directory(
            tool_input.get("path", "."), bool(tool_input.get("recursive", False))
        )

    async def _search_code(self, run: GenerationRun, tool_input: dict[str, Any]) -> str:
        return run.workspace.search_code(tool_input["pattern"], tool_input.get("file_type"))

    async def _run_command(self, run: GenerationRun, tool_input: dict[str, Any]) -> str:
        command = tool_input["command"]
        result = await self.sandboxes.run_command(
            run.sandbox_id,
            f"cd {settings.sandbox_remote_root} && {command}",
            timeout=int(tool_input.get("timeout", 60)),
        )
        if not result.ok:
            raise ToolError(result.format())
        return result.format()


def describe_tool_call(call: ToolCall) -> str:
    """Short human-readable description of a tool call."""
    tool_input = call.input
    descriptions = {
        ToolKind.WRITE_FILE.value: lambda: f"Writing {tool_input.get('path')}",
        ToolKind.READ_FILE.value: lambda: f"Reading {tool_input.get('path')}",
        ToolKind.LIST_DIRECTORY.value: lambda: f"Listing {tool_input.get('path', '.')}",
        ToolKind.SEARCH_CODE.value: lambda: f"Searching for {tool_input.get('pattern')}",
        ToolKind.RUN_COMMAND.value: lambda: f"Running {tool_input.get('command')}",
    }
    describe = descriptions.get(call.name)
    return describe() if describe else f"Calling {call.name}"
