"""Persistence for TaskForge projects, tasks and generations."""

from taskforge.db.models import Base, Generation, GenerationStatus, Project, Task
from taskforge.db.store import TaskStore, create_db_engine

__all__ = [
    "Base",
    "Generation",
    "GenerationStatus",
    "Project",
    "Task",
    "TaskStore",
    "create_db_engine",
]
