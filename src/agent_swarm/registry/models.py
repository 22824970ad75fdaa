from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, String, Text

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Project(Base):
    """
    Golden template VM. ``provider`` is fixed at creation; every later
    operation on the project goes through that provider.
    """

    __tablename__ = "project"
    name = Column(String, primary_key=True)
    provider = Column(String, nullable=False)
    vm_id = Column(String, nullable=False)
    base_image = Column(String, nullable=False, server_default="")
    ip = Column(String, nullable=True)
    status = Column(String, nullable=False, server_default="stopped")
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<Project {self.name} {self.provider} {self.status}>"


class Task(Base):
    """
    Ephemeral clone of a project. ``project`` may be "" for rows written
    before tasks were tied to projects.
    """

    __tablename__ = "task"
    id = Column(String, primary_key=True)
    project = Column(String, ForeignKey("project.name"), nullable=False, server_default="")
    provider = Column(String, nullable=False)
    vm_id = Column(String, nullable=False)
    base_image = Column(String, nullable=False, server_default="")
    ip = Column(String, nullable=True)
    status = Column(String, nullable=False, server_default="stopped")
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<Task {self.id} project={self.project!r} {self.status}>"


class Secret(Base):
    """Encrypted value of an environment variable; scope "" is global."""

    __tablename__ = "secret"
    name = Column(String, primary_key=True)
    scope = Column(String, primary_key=True, server_default="")
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=True, default=_utcnow, onupdate=_utcnow)
