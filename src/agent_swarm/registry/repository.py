"""CRUD over the project, task and secret tables.

Pure storage: no lifecycle rules live here. Every call runs in its own
short-lived session, so one Registry can be shared by worker threads.
Returned rows are detached but fully loaded.
"""

from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..exceptions import AlreadyExistsError, ProjectNotFoundError, TaskNotFoundError
from .database import create_registry_engine, init_schema
from .models import Project, Secret, Task


class Registry:
    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def open(cls, url: Optional[str] = None) -> "Registry":
        """Open (creating or migrating as needed) the registry at *url*."""
        engine = create_registry_engine(url)
        init_schema(engine)
        return cls(engine)

    @classmethod
    def in_memory(cls) -> "Registry":
        return cls.open("sqlite://")

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ── projects ─────────────────────────────────────────────────────────────

    def add_project(
        self,
        name: str,
        provider: str,
        vm_id: str,
        base_image: str,
        ip: Optional[str],
        status: str,
    ) -> Project:
        project = Project(
            name=name, provider=provider, vm_id=vm_id, base_image=base_image, ip=ip, status=status
        )
        try:
            with self.session() as db:
                db.add(project)
                db.flush()
                db.refresh(project)
        except IntegrityError as e:
            raise AlreadyExistsError(f"Project already exists: {name}") from e
        return project

    def get_project(self, name: str) -> Optional[Project]:
        with self.session() as db:
            return db.get(Project, name)

    def list_projects(self) -> List[Project]:
        with self.session() as db:
            return db.query(Project).order_by(Project.created_at.desc(), Project.name).all()

    def update_project_status(self, name: str, status: str) -> None:
        with self.session() as db:
            project = db.get(Project, name)
            if project is None:
                raise ProjectNotFoundError(name)
            project.status = status

    def update_project_ip(self, name: str, ip: Optional[str]) -> None:
        with self.session() as db:
            project = db.get(Project, name)
            if project is None:
                raise ProjectNotFoundError(name)
            project.ip = ip

    def remove_project(self, name: str) -> bool:
        with self.session() as db:
            return db.query(Project).filter(Project.name == name).delete() > 0

    # ── tasks ────────────────────────────────────────────────────────────────

    def add_task(
        self,
        task_id: str,
        project: str,
        provider: str,
        vm_id: str,
        base_image: str,
        ip: Optional[str],
        status: str,
    ) -> Task:
        task = Task(
            id=task_id,
            project=project,
            provider=provider,
            vm_id=vm_id,
            base_image=base_image,
            ip=ip,
            status=status,
        )
        try:
            with self.session() as db:
                db.add(task)
                db.flush()
                db.refresh(task)
        except IntegrityError as e:
            raise AlreadyExistsError(f"Task already exists: {task_id}") from e
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self.session() as db:
            return db.get(Task, task_id)

    def list_tasks(self, project: Optional[str] = None) -> List[Task]:
        with self.session() as db:
            query = db.query(Task)
            if project is not None:
                query = query.filter(Task.project == project)
            return query.order_by(Task.created_at.desc(), Task.id).all()

    def task_ids_for_project(self, project: str) -> List[str]:
        with self.session() as db:
            rows = db.query(Task.id).filter(Task.project == project).order_by(Task.id).all()
            return [row[0] for row in rows]

    def update_task_status(self, task_id: str, status: str) -> None:
        with self.session() as db:
            task = db.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            task.status = status

    def update_task_ip(self, task_id: str, ip: Optional[str]) -> None:
        with self.session() as db:
            task = db.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            task.ip = ip

    def remove_task(self, task_id: str) -> bool:
        with self.session() as db:
            return db.query(Task).filter(Task.id == task_id).delete() > 0

    # ── secrets ──────────────────────────────────────────────────────────────

    def upsert_secret(self, name: str, scope: str, value: str) -> None:
        """Insert or overwrite the ciphertext stored under ``(name, scope)``."""
        with self.session() as db:
            db.merge(Secret(name=name, scope=scope, value=value))

    def get_secret(self, name: str, scope: str = "") -> Optional[str]:
        with self.session() as db:
            secret = db.get(Secret, (name, scope))
            return secret.value if secret else None

    def remove_secret(self, name: str, scope: str = "") -> bool:
        with self.session() as db:
            deleted = db.query(Secret).filter(Secret.name == name, Secret.scope == scope).delete()
            return deleted > 0

    def list_secrets(self, scope: Optional[str] = None) -> List[Secret]:
        """All secrets, or only those in *scope* ("" for globals)."""
        with self.session() as db:
            query = db.query(Secret)
            if scope is not None:
                query = query.filter(Secret.scope == scope)
            return query.order_by(Secret.scope, Secret.name).all()
