"""Keyed store for projects, tasks and generations.

Each public method runs in its own session. Objects are returned detached with
their column attributes loaded; relationships are fetched through explicit
methods instead of lazy loading.

Sessions are synchronous and are called straight from the async handlers and
the generation stream. Each call is one short transaction, which is fine for
SQLite. A networked database would block the event loop for a round trip per
call; those calls belong in ``asyncio.to_thread`` (as the Docker provider does)
before pointing ``DATABASE_URL`` at one.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from taskforge.core.task_state import TaskState
from taskforge.db.models import Base, Generation, GenerationStatus, Project, Task

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str) -> Engine:
    """Create an engine, sharing one connection for in-memory SQLite."""
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


class TaskStore:
    """Plain keyed CRUD over the TaskForge tables."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str) -> "TaskStore":
        store = cls(create_db_engine(database_url))
        store.create_all()
        return store

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on error."""
        with self._sessions() as session:
            with session.begin():
                yield session

    # Projects

    def create_project(self, **fields: Any) -> Project:
        with self.session() as session:
            project = Project(**fields)
            session.add(project)
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        with self.session() as session:
            return session.get(Project, project_id)

    def update_project(self, project_id: str, **fields: Any) -> Optional[Project]:
        with self.session() as session:
            project = session.get(Project, project_id)
            if project is None:
                return None
            for key, value in fields.items():
                setattr(project, key, value)
        return project

    # Tasks

    def create_task(self, **fields: Any) -> Task:
        with self.session() as session:
            task = Task(**fields)
            state = TaskState.from_values(
                fields.get("status", "todo"),
                fields.get("build_status", "pending"),
            )
            if state is None:
                raise ValueError(f"Invalid task state: {fields.get('status')}")
            task.apply_state(state)
            session.add(task)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self.session() as session:
            return session.get(Task, task_id)

    def find_task_by_pull_request(
        self, branch_name: Optional[str], pr_number: Optional[int]
    ) -> Optional[Task]:
        """Find the task tracking a given head branch and PR number."""
        if branch_name is None or pr_number is None:
            return None
        with self.session() as session:
            return session.scalars(
                select(Task).where(
                    Task.branch_name == branch_name,
                    Task.pr_number == pr_number,
                )
            ).first()

    def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        """Update non-state fields (branch, PR info, title...)."""
        for forbidden in ("status", "column", "build_status"):
            if forbidden in fields:
                raise ValueError(f"Use transition_task to change {forbidden}")
        with self.session() as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            for key, value in fields.items():
                setattr(task, key, value)
        return task

    def transition_task(
        self,
        task_id: str,
        transition: Callable[[TaskState], TaskState],
        **fields: Any,
    ) -> Optional[tuple[Optional[TaskState], Optional[TaskState], Task]]:
        """Apply a pure transition to a task inside a single transaction.

        Returns (before, after, task), or None if the task does not exist. A task
        whose stored state is not recognized is left untouched (before and after
        are both None).
        """
        with self.session() as session:
            task = session.get(Task, task_id, with_for_update=True)
            if task is None:
                return None

            before = task.state
            if before is None:
                logger.warning(f"Task {task_id} has unrecognized state {task.status}/{task.build_status}")
                return None, None, task

            after = transition(before)
            if after != before:
                task.apply_state(after)
            for key, value in fields.items():
                setattr(task, key, value)
        return before, after, task

    # Generations

    def create_generation(self, **fields: Any) -> Generation:
        with self.session() as session:
            generation = Generation(**fields)
            session.add(generation)
        return generation

    def get_generation(self, generation_id: str) -> Optional[Generation]:
        with self.session() as session:
            return session.get(Generation, generation_id)

    def update_generation(self, generation_id: str, **fields: Any) -> Optional[Generation]:
        with self.session() as session:
            generation = session.get(Generation, generation_id)
            if generation is None:
                return None
            if generation.is_terminal and "status" in fields:
                logger.warning(f"Generation {generation_id} is already {generation.status.value}")
                fields = {
                    k: v
                    for k, v in fields.items()
                    if k not in ("status", "completed_at", "error_message")
                }
            for key, value in fields.items():
                setattr(generation, key, value)
        return generation

    def finish_generation(
        self,
        generation_id: str,
        status: GenerationStatus,
        error_message: Optional[str] = None,
        **fields: Any,
    ) -> Optional[Generation]:
        return self.update_generation(
            generation_id,
            status=status,
            error_message=error_message,
            completed_at=datetime.utcnow(),
            **fields,
        )

    def active_generation_for_task(self, task_id: str) -> Optional[Generation]:
        """Return a pending or running generation of the task, if any."""
        with self.session() as session:
            return session.scalars(
                select(Generation).where(
                    Generation.task_id == task_id,
                    Generation.status.in_(
                        [GenerationStatus.PENDING, GenerationStatus.RUNNING]
                    ),
                )
            ).first()

    def list_generations(self, task_id: str) -> list[Generation]:
        with self.session() as session:
            return list(
                session.scalars(
                    select(Generation)
                    .where(Generation.task_id == task_id)
                    .order_by(Generation.created_at.desc())
                )
            )
