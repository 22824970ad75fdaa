"""
Lifecycle orchestration for agent-swarm.

Ties the registry, the providers and the secret backend together: projects
are golden VMs, tasks are copy-on-write clones of a project disk. Provider
calls always happen before the registry is written, so a failed operation
leaves the recorded state untouched.
"""
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from agent_swarm.exceptions import (
    AlreadyExistsError,
    CheckpointNotFoundError,
    NotFoundError,
    ProjectNotFoundError,
    ReferentialConflictError,
    SwarmError,
    TaskNotFoundError,
)
from agent_swarm.images import default_base_image
from agent_swarm.interfaces.provider import Provider, SshInfo, VmStatus
from agent_swarm.logging import get_logger, log_operation
from agent_swarm.models import SwarmConfig
from agent_swarm.paths import validate_name
from agent_swarm.registry import Project, Registry, Task
from agent_swarm.secrets import SecretBackend

log = get_logger(__name__)

RUNNING = VmStatus.RUNNING.value
STOPPED = VmStatus.STOPPED.value


def default_checkpoint_name(now: Optional[datetime] = None) -> str:
    """UTC timestamp such as ``20260102T030405123456Z``."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%dT%H%M%S%fZ")


class IdLocks:
    """In-process mutex per object key (``project:<name>``, ``task:<id>``).

    An entry lives only while some thread holds or waits on it.
    """

    def __init__(self):
        self._locks: Dict[str, List[Any]] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass
class BulkOutcome:
    """Result of one id within a bulk operation."""
    id: str
    ok: bool
    detail: str = ""


@dataclass
class BulkResult:
    outcomes: List[BulkOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def summary(self, verb: str) -> str:
        """e.g. ``"2 created, 1 failed"``."""
        return f"{self.succeeded} {verb}, {self.failed} failed"


@dataclass
class StatusOverview:
    projects: int
    tasks: int
    running_tasks: int
    stopped_tasks: int
    providers: List[Tuple[str, bool]]
    base_image: Optional[Path]


class Orchestrator:
    """
    Project and task lifecycle on top of a pinned provider per VM.

    Usage:
        orch = Orchestrator(registry, secrets, detector, config)
        orch.create_project("webapp")
        orch.bulk_create("webapp", ["fix-1", "fix-2"])
        info, env = orch.connect_task("fix-1")
    """

    def __init__(
        self,
        registry: Registry,
        secrets: SecretBackend,
        detector: Any,
        config: Optional[SwarmConfig] = None,
    ):
        self.registry = registry
        self.secrets = secrets
        self.detector = detector
        self.config = config or SwarmConfig()
        self.locks = IdLocks()
        # task ids being cloned but not yet recorded, per project
        self._pending: Dict[str, Set[str]] = {}

    # ── lookups ──────────────────────────────────────────────────────────────

    def get_project(self, name: str) -> Project:
        project = self.registry.get_project(name)
        if project is None:
            raise ProjectNotFoundError(name)
        return project

    def get_task(self, task_id: str) -> Task:
        task = self.registry.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_projects(self) -> List[Project]:
        return self.registry.list_projects()

    def list_tasks(self, project: Optional[str] = None) -> List[Task]:
        return self.registry.list_tasks(project)

    def provider_for(self, record: Any) -> Provider:
        """The provider a registry row is pinned to; never re-detects."""
        return self.detector.get(record.provider)

    # ── projects ─────────────────────────────────────────────────────────────

    def create_project(
        self,
        name: str,
        base_image: Optional[Path] = None,
        provider_name: Optional[str] = None,
    ) -> Project:
        validate_name(name, "project name")
        with self.locks.hold(f"project:{name}"), log_operation(log, "project_create", project=name) as op:
            if self.registry.get_project(name) is not None:
                raise AlreadyExistsError(f"Project already exists: {name}")

            base = Path(base_image) if base_image else default_base_image()
            if base is None:
                raise NotFoundError("No base image found. Run `agent-swarm init-base` first.")
            if not base.exists():
                raise NotFoundError(f"Base image not found: {base}")

            provider = (
                self.detector.require(provider_name) if provider_name else self.detector.detect()
            )
            op.info("project_create.provider", provider=provider.name, base_image=str(base))
            info = provider.create_vm(name, str(base))
            if info.ip is None:
                op.warning("project_create.not_ready", vm_id=info.vm_id)
            return self.registry.add_project(
                name, provider.name, info.vm_id, str(base), info.ip, info.status.value
            )

    def start_project(self, name: str) -> Project:
        with self.locks.hold(f"project:{name}"), log_operation(log, "project_start", project=name):
            project = self.get_project(name)
            provider = self.provider_for(project)
            provider.start_vm(project.vm_id)
            self.registry.update_project_status(name, RUNNING)
            ip = self._refresh_ip(provider, project.vm_id)
            if ip:
                self.registry.update_project_ip(name, ip)
            return self.get_project(name)

    def stop_project(self, name: str) -> Project:
        with self.locks.hold(f"project:{name}"), log_operation(log, "project_stop", project=name):
            project = self.get_project(name)
            self.provider_for(project).stop_vm(project.vm_id)
            self.registry.update_project_status(name, STOPPED)
            return self.get_project(name)

    def delete_project(self, name: str) -> None:
        with self.locks.hold(f"project:{name}"), log_operation(log, "project_delete", project=name):
            blocking = sorted(
                set(self.registry.task_ids_for_project(name)) | self._pending.get(name, set())
            )
            if blocking:
                raise ReferentialConflictError(name, blocking)
            project = self.get_project(name)
            self.provider_for(project).delete_vm(project.vm_id)
            self.registry.remove_project(name)

    def _quiesce_project(self, project: Project, provider: Provider) -> None:
        """Stop a project before its disk is cloned."""
        if project.status == RUNNING or provider.status(project.vm_id) == VmStatus.RUNNING:
            log.info("project.stopping_for_clone", project=project.name)
            provider.stop_vm(project.vm_id)
            self.registry.update_project_status(project.name, STOPPED)

    # ── tasks ────────────────────────────────────────────────────────────────

    def create_task(self, project: str, task_id: str) -> Task:
        validate_name(task_id, "task id")
        with self.locks.hold(f"task:{task_id}"), log_operation(
            log, "task_create", task_id=task_id, project=project
        ):
            if self.registry.get_task(task_id) is not None:
                raise AlreadyExistsError(f"Task already exists: {task_id}")

            with self.locks.hold(f"project:{project}"):
                parent = self.get_project(project)
                provider = self.provider_for(parent)
                self._quiesce_project(parent, provider)
                source = provider.project_disk_path(parent.name)
                if not Path(source).exists():
                    raise NotFoundError(f"Project disk not found: {source}")
                self._pending.setdefault(project, set()).add(task_id)

            # project lock released; the pending entry blocks delete_project
            try:
                info = provider.create_vm(task_id, source)
                return self.registry.add_task(
                    task_id,
                    parent.name,
                    provider.name,
                    info.vm_id,
                    parent.base_image,
                    info.ip,
                    info.status.value,
                )
            finally:
                with self.locks.hold(f"project:{project}"):
                    pending = self._pending.get(project, set())
                    pending.discard(task_id)
                    if not pending:
                        self._pending.pop(project, None)

    def start_task(self, task_id: str) -> Task:
        with self.locks.hold(f"task:{task_id}"), log_operation(log, "task_start", task_id=task_id):
            task = self.get_task(task_id)
            provider = self.provider_for(task)
            provider.start_vm(task.vm_id)
            self.registry.update_task_status(task_id, RUNNING)
            ip = self._refresh_ip(provider, task.vm_id)
            if ip:
                self.registry.update_task_ip(task_id, ip)
            return self.get_task(task_id)

    def stop_task(self, task_id: str) -> Task:
        with self.locks.hold(f"task:{task_id}"), log_operation(log, "task_stop", task_id=task_id):
            task = self.get_task(task_id)
            self.provider_for(task).stop_vm(task.vm_id)
            self.registry.update_task_status(task_id, STOPPED)
            return self.get_task(task_id)

    def delete_task(self, task_id: str) -> None:
        with self.locks.hold(f"task:{task_id}"), log_operation(log, "task_delete", task_id=task_id):
            task = self.get_task(task_id)
            self.provider_for(task).delete_vm(task.vm_id)
            self.registry.remove_task(task_id)

    # ── checkpoints ──────────────────────────────────────────────────────────

    def checkpoint(self, task_id: str, name: Optional[str] = None) -> str:
        name = name or default_checkpoint_name()
        validate_name(name, "checkpoint name")
        with self.locks.hold(f"task:{task_id}"), log_operation(
            log, "checkpoint", task_id=task_id, checkpoint=name
        ):
            task = self.get_task(task_id)
            self.provider_for(task).checkpoint(task.vm_id, name)
            self.registry.update_task_status(task_id, STOPPED)
            return name

    def list_checkpoints(self, task_id: str) -> List[str]:
        task = self.get_task(task_id)
        return self.provider_for(task).list_checkpoints(task.vm_id)

    def restore(self, task_id: str, name: Optional[str] = None) -> str:
        with self.locks.hold(f"task:{task_id}"), log_operation(log, "restore", task_id=task_id) as op:
            task = self.get_task(task_id)
            provider = self.provider_for(task)
            if name is None:
                names = provider.list_checkpoints(task.vm_id)
                if not names:
                    raise CheckpointNotFoundError(task_id)
                name = names[-1]
            op.info("restore.checkpoint", checkpoint=name)
            provider.restore(task.vm_id, name)
            self.registry.update_task_status(task_id, STOPPED)
            return name

    # ── sessions ─────────────────────────────────────────────────────────────

    def ensure_task_running(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if self.provider_for(task).status(task.vm_id) != VmStatus.RUNNING:
            log.info("task.auto_start", task_id=task_id)
            return self.start_task(task_id)
        return task

    def ensure_project_running(self, name: str) -> Project:
        project = self.get_project(name)
        if self.provider_for(project).status(project.vm_id) != VmStatus.RUNNING:
            log.info("project.auto_start", project=name)
            return self.start_project(name)
        return project

    def task_ssh_info(self, task_id: str) -> SshInfo:
        """Start the task if needed and return where to reach it."""
        task = self.ensure_task_running(task_id)
        info = self.provider_for(task).ssh_info(task.vm_id)
        if info.host != task.ip:
            self.registry.update_task_ip(task_id, info.host)
        return info

    def connect_task(self, task_id: str) -> Tuple[SshInfo, Dict[str, str]]:
        """SSH coordinates plus the session environment for a task."""
        info = self.task_ssh_info(task_id)
        return info, self.secrets.resolve(self.get_task(task_id).project)

    def project_ssh_info(self, name: str) -> SshInfo:
        project = self.ensure_project_running(name)
        info = self.provider_for(project).ssh_info(project.vm_id)
        if info.host != project.ip:
            self.registry.update_project_ip(name, info.host)
        return info

    def connect_project(self, name: str) -> Tuple[SshInfo, Dict[str, str]]:
        return self.project_ssh_info(name), self.secrets.resolve(name)

    def _refresh_ip(self, provider: Provider, vm_id: str) -> Optional[str]:
        try:
            return provider.ssh_info(vm_id).host
        except SwarmError as e:
            log.warning("ip.refresh_failed", vm_id=vm_id, error=str(e))
            return None

    # ── bulk ─────────────────────────────────────────────────────────────────

    def bulk_create(self, project: str, task_ids: List[str]) -> BulkResult:
        """Clone *project* once per id in parallel; every id is settled."""
        with self.locks.hold(f"project:{project}"):
            parent = self.get_project(project)
            self._quiesce_project(parent, self.provider_for(parent))

        def create(task_id: str) -> str:
            return self.create_task(project, task_id).ip or ""

        return self._settle_all(task_ids, create, "bulk_create")

    def bulk_delete(self, task_ids: List[str]) -> BulkResult:
        def delete(task_id: str) -> str:
            self.delete_task(task_id)
            return ""

        return self._settle_all(task_ids, delete, "bulk_delete")

    def bulk_delete_project_tasks(self, project: str) -> BulkResult:
        task_ids = self.registry.task_ids_for_project(project)
        if not task_ids:
            raise NotFoundError(f"No tasks found for project {project}")
        return self.bulk_delete(task_ids)

    def _settle_all(
        self, ids: List[str], action: Callable[[str], str], operation: str
    ) -> BulkResult:
        start = time.time()
        if not ids:
            return BulkResult()

        workers = max(1, min(self.config.max_workers, len(ids)))
        executor = ThreadPoolExecutor(max_workers=workers)
        try:
            futures: List[Future] = [executor.submit(action, item) for item in ids]
            outcomes = []
            for item, future in zip(ids, futures):
                try:
                    outcomes.append(BulkOutcome(item, True, future.result()))
                except Exception as e:
                    log.error(f"{operation}.item_failed", id=item, error=str(e))
                    outcomes.append(BulkOutcome(item, False, str(e)))
        finally:
            executor.shutdown(wait=True)

        result = BulkResult(outcomes, duration_seconds=time.time() - start)
        log.info(f"{operation}.settled", succeeded=result.succeeded, failed=result.failed)
        return result

    # ── overview ─────────────────────────────────────────────────────────────

    def status_overview(self) -> StatusOverview:
        tasks = self.registry.list_tasks()
        running = sum(1 for t in tasks if t.status == RUNNING)
        return StatusOverview(
            projects=len(self.registry.list_projects()),
            tasks=len(tasks),
            running_tasks=running,
            stopped_tasks=len(tasks) - running,
            providers=self.detector.availability(),
            base_image=default_base_image(),
        )
