"""Durable SQLite registry of projects, tasks and encrypted secrets."""

from .database import Base, create_registry_engine, init_schema
from .models import Project, Secret, Task
from .repository import Registry

__all__ = [
    "Base",
    "Project",
    "Registry",
    "Secret",
    "Task",
    "create_registry_engine",
    "init_schema",
]
