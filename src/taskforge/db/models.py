"""Database models for TaskForge."""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from taskforge.core.task_state import (
    BuildStatus,
    TaskState,
    TaskStatus,
    COLUMN_FOR_STATUS,
    is_valid_pair,
)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


def _uuid() -> str:
    return str(uuid4())


# =============================================================================
# Enums
# =============================================================================


class GenerationStatus(enum.Enum):
    """Generation lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# Models
# =============================================================================


class Project(Base):
    """A project whose tasks are built by the agent."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Repository info
    github_repo_owner: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    github_repo_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    default_branch: Mapped[str] = mapped_column(String(100), default="main")

    # Sandbox
    sandbox_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sandbox_status: Mapped[str] = mapped_column(String(20), default="inactive")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    tasks: Mapped[list["Task"]] = relationship("Task", back_populates="project")

    @property
    def is_linked(self) -> bool:
        return bool(self.github_repo_owner and self.github_repo_name)


class Task(Base):
    """A card on the kanban board."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"))

    title: Mapped[str] = mapped_column(String(500))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(20), default="medium")

    # Board state; column always mirrors status
    status: Mapped[str] = mapped_column(String(20), default=TaskStatus.TODO.value)
    column: Mapped[str] = mapped_column(String(20), default=COLUMN_FOR_STATUS[TaskStatus.TODO].value)
    build_status: Mapped[str] = mapped_column(String(20), default=BuildStatus.PENDING.value)

    # Branch / PR tracking
    branch_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    pr_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    pr_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    project: Mapped["Project"] = relationship("Project", back_populates="tasks")
    generations: Mapped[list["Generation"]] = relationship(
        "Generation", back_populates="task", order_by="Generation.created_at.desc()"
    )

    @property
    def state(self) -> Optional[TaskState]:
        if not is_valid_pair(self.status, self.column):
            return None
        return TaskState.from_values(self.status, self.build_status, self.completed_at)

    def apply_state(self, state: TaskState) -> None:
        """Write a state back, keeping column derived from status."""
        self.status = state.status.value
        self.column = state.column.value
        self.build_status = state.build_status.value
        self.completed_at = state.completed_at


class Generation(Base):
    """One end-to-end run of the agent for a project or task."""

    __tablename__ = "generations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"))
    task_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("tasks.id"), nullable=True
    )

    prompt: Mapped[str] = mapped_column(Text)
    status: Mapped[GenerationStatus] = mapped_column(
        default=GenerationStatus.PENDING
    )
    agent_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sandbox_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    files_created: Mapped[list] = mapped_column(JSON, default=list)

    # Git results
    commit_sha: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    commit_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    task: Mapped[Optional["Task"]] = relationship("Task", back_populates="generations")

    @property
    def is_terminal(self) -> bool:
        return self.status in (GenerationStatus.COMPLETED, GenerationStatus.FAILED)
