"""Tests for the SQLite registry."""
import time

import pytest
from sqlalchemy import create_engine, inspect, text

from agent_swarm.exceptions import AlreadyExistsError, ProjectNotFoundError, TaskNotFoundError
from agent_swarm.registry import Registry, init_schema


def _add_project(reg, name="webapp", status="running"):
    return reg.add_project(name, "kvm", f"project-{name}", "/img/base.qcow2", "10.0.0.2", status)


class TestProjects:
    def test_add_and_get(self, memory_registry):
        _add_project(memory_registry)
        project = memory_registry.get_project("webapp")
        assert project.provider == "kvm"
        assert project.vm_id == "project-webapp"
        assert project.ip == "10.0.0.2"
        assert project.created_at is not None

    def test_duplicate_rejected(self, memory_registry):
        _add_project(memory_registry)
        with pytest.raises(AlreadyExistsError):
            _add_project(memory_registry)

    def test_get_missing(self, memory_registry):
        assert memory_registry.get_project("nope") is None

    def test_list_newest_first(self, memory_registry):
        _add_project(memory_registry, "first")
        time.sleep(0.01)
        _add_project(memory_registry, "second")
        assert [p.name for p in memory_registry.list_projects()] == ["second", "first"]

    def test_update_status_and_ip(self, memory_registry):
        _add_project(memory_registry)
        memory_registry.update_project_status("webapp", "stopped")
        memory_registry.update_project_ip("webapp", None)
        project = memory_registry.get_project("webapp")
        assert project.status == "stopped"
        assert project.ip is None

    def test_update_missing_raises(self, memory_registry):
        with pytest.raises(ProjectNotFoundError):
            memory_registry.update_project_status("nope", "stopped")

    def test_remove(self, memory_registry):
        _add_project(memory_registry)
        assert memory_registry.remove_project("webapp") is True
        assert memory_registry.remove_project("webapp") is False


class TestTasks:
    def test_add_list_and_filter(self, memory_registry):
        _add_project(memory_registry, "a")
        _add_project(memory_registry, "b")
        memory_registry.add_task("t1", "a", "kvm", "agent-swarm-t1", "/img", "10.0.0.3", "running")
        memory_registry.add_task("t2", "b", "kvm", "agent-swarm-t2", "/img", None, "running")
        memory_registry.add_task("t3", "a", "kvm", "agent-swarm-t3", "/img", None, "stopped")

        assert {t.id for t in memory_registry.list_tasks()} == {"t1", "t2", "t3"}
        assert {t.id for t in memory_registry.list_tasks("a")} == {"t1", "t3"}
        assert memory_registry.task_ids_for_project("a") == ["t1", "t3"]

    def test_legacy_empty_project(self, memory_registry):
        memory_registry.add_task("old", "", "macos-native", "agent-swarm-old", "", None, "stopped")
        assert memory_registry.get_task("old").project == ""

    def test_duplicate_rejected(self, memory_registry):
        memory_registry.add_task("t1", "", "kvm", "agent-swarm-t1", "", None, "running")
        with pytest.raises(AlreadyExistsError):
            memory_registry.add_task("t1", "", "kvm", "agent-swarm-t1", "", None, "running")

    def test_updates_and_remove(self, memory_registry):
        memory_registry.add_task("t1", "", "kvm", "agent-swarm-t1", "", None, "running")
        memory_registry.update_task_status("t1", "stopped")
        memory_registry.update_task_ip("t1", "10.0.0.4")
        task = memory_registry.get_task("t1")
        assert (task.status, task.ip) == ("stopped", "10.0.0.4")
        assert memory_registry.remove_task("t1") is True
        with pytest.raises(TaskNotFoundError):
            memory_registry.update_task_ip("t1", None)


class TestSecrets:
    def test_upsert_overwrites(self, memory_registry):
        memory_registry.upsert_secret("TOKEN", "", "c1")
        memory_registry.upsert_secret("TOKEN", "", "c2")
        assert memory_registry.get_secret("TOKEN") == "c2"
        assert len(memory_registry.list_secrets()) == 1

    def test_scopes_are_independent(self, memory_registry):
        memory_registry.upsert_secret("TOKEN", "", "global")
        memory_registry.upsert_secret("TOKEN", "webapp", "scoped")
        assert memory_registry.get_secret("TOKEN", "webapp") == "scoped"
        assert [s.scope for s in memory_registry.list_secrets()] == ["", "webapp"]
        assert [s.scope for s in memory_registry.list_secrets("")] == [""]

    def test_list_ordered_by_scope_then_name(self, memory_registry):
        memory_registry.upsert_secret("B", "p", "x")
        memory_registry.upsert_secret("A", "p", "x")
        memory_registry.upsert_secret("Z", "", "x")
        assert [(s.scope, s.name) for s in memory_registry.list_secrets()] == [
            ("", "Z"),
            ("p", "A"),
            ("p", "B"),
        ]

    def test_remove(self, memory_registry):
        memory_registry.upsert_secret("TOKEN", "", "c1")
        assert memory_registry.remove_secret("TOKEN") is True
        assert memory_registry.remove_secret("TOKEN") is False
        assert memory_registry.get_secret("TOKEN") is None


class TestSchema:
    def test_missing_columns_are_added(self, temp_dir):
        url = f"sqlite:///{temp_dir / 'old.db'}"
        engine = create_engine(url)
        with engine.begin() as conn:
            conn.execute(
                text(
                    "CREATE TABLE task (id VARCHAR PRIMARY KEY, provider VARCHAR NOT NULL, "
                    "vm_id VARCHAR NOT NULL, status VARCHAR NOT NULL, created_at DATETIME NOT NULL)"
                )
            )
            conn.execute(
                text(
                    "INSERT INTO task VALUES "
                    "('old', 'macos-native', 'agent-swarm-old', 'stopped', '2025-01-01 00:00:00')"
                )
            )

        init_schema(engine)

        columns = {c["name"] for c in inspect(engine).get_columns("task")}
        assert {"project", "base_image", "ip"} <= columns
        engine.dispose()

        reg = Registry.open(url)
        task = reg.get_task("old")
        assert task.project == ""
        assert task.base_image == ""
        assert task.ip is None
        reg.close()

    def test_file_parent_is_created(self, temp_dir):
        db = temp_dir / "nested" / "dir" / "registry.db"
        reg = Registry.open(f"sqlite:///{db}")
        _add_project(reg)
        reg.close()
        assert db.exists()
