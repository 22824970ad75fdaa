#!/usr/bin/env python3
"""
agent-swarm CLI - disposable VMs for parallel agents on one codebase.
"""

import argparse
import json
import re
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from agent_swarm import __version__
from agent_swarm.di import DependencyContainer, create_default_container
from agent_swarm.exceptions import SecretNotFoundError, SwarmError
from agent_swarm.images import prepare_base_image
from agent_swarm.interfaces.process import ProcessRunner
from agent_swarm.logging import configure_logging
from agent_swarm.models import SwarmConfig
from agent_swarm.orchestrator import BulkResult, Orchestrator
from agent_swarm.secrets import SecretBackend
from agent_swarm.ssh import scp_from, scp_to, ssh_interactive, ssh_run, vscode_remote_command

console = Console()

# TASK:/remote/path
_REMOTE_PATH = re.compile(r"^([^:/\\]+):(.+)$")


def _orchestrator(args) -> Orchestrator:
    return args.container.resolve(Orchestrator)


def _secrets(args) -> SecretBackend:
    return args.container.resolve(SecretBackend)


@contextmanager
def _spinner(description: str) -> Iterator[None]:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(description, total=None)
        yield


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else ""


def _status_cell(status: str) -> str:
    style = "green" if status == "running" else "dim"
    return f"[{style}]{status}[/]"


def _scope_label(project: Optional[str]) -> str:
    return f"project: {project}" if project else "global"


def _open_editor(args, info) -> int:
    """Launch VS Code Remote-SSH against *info* without waiting for it."""
    command = vscode_remote_command(info, args.path)
    console.print(f"Opening VS Code: {info.user}@{info.host}:{command[-1]}")
    args.container.resolve(ProcessRunner).spawn_detached(command)
    return 0


# ── projects ─────────────────────────────────────────────────────────────────


def cmd_project_create(args) -> int:
    """Create a golden project VM."""
    with _spinner(f"[cyan]Creating project {args.name}..."):
        project = _orchestrator(args).create_project(
            args.name, base_image=args.base_image, provider_name=args.provider
        )
    console.print(f"[green]✅ Project {project.name} created ({project.provider})[/]")
    if project.ip:
        console.print(f"   IP: {project.ip}")
    else:
        console.print("[yellow]⚠️  VM started but is not reachable yet; check again shortly.[/]")
    return 0


def cmd_project_list(args) -> int:
    projects = _orchestrator(args).list_projects()

    if args.json:
        print(
            json.dumps(
                [
                    {
                        "name": p.name,
                        "provider": p.provider,
                        "vm_id": p.vm_id,
                        "status": p.status,
                        "ip": p.ip,
                        "created_at": _fmt_time(p.created_at),
                    }
                    for p in projects
                ],
                indent=2,
            )
        )
        return 0

    if not projects:
        console.print("[dim]No projects. Create one with: agent-swarm project create <NAME>[/]")
        return 0

    table = Table(title="Projects", border_style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("IP")
    table.add_column("Created", style="dim")
    for p in projects:
        table.add_row(p.name, p.provider, _status_cell(p.status), p.ip or "-", _fmt_time(p.created_at))
    console.print(table)
    return 0


def cmd_project_start(args) -> int:
    with _spinner(f"[cyan]Starting project {args.name}..."):
        project = _orchestrator(args).start_project(args.name)
    console.print(f"[green]Running.[/] IP: {project.ip or '(not yet available)'}")
    return 0


def cmd_project_stop(args) -> int:
    with _spinner(f"[cyan]Stopping project {args.name}..."):
        _orchestrator(args).stop_project(args.name)
    console.print("Stopped.")
    return 0


def cmd_project_delete(args) -> int:
    with _spinner(f"[cyan]Deleting project {args.name}..."):
        _orchestrator(args).delete_project(args.name)
    console.print("Deleted.")
    return 0


def cmd_project_ssh(args) -> int:
    info, env = _orchestrator(args).connect_project(args.name)
    console.print(f"Connecting to project {args.name} ({info.user}@{info.host}:{info.port})...")
    return ssh_interactive(info, env)


def cmd_project_run(args) -> int:
    info, env = _orchestrator(args).connect_project(args.name)
    return ssh_run(info, " ".join(args.command), env)


def cmd_project_code(args) -> int:
    return _open_editor(args, _orchestrator(args).project_ssh_info(args.name))


# ── tasks ────────────────────────────────────────────────────────────────────


def cmd_create(args) -> int:
    """Clone a task VM from a project."""
    with _spinner(f"[cyan]Creating task {args.task} from {args.project}..."):
        task = _orchestrator(args).create_task(args.project, args.task)
    console.print(f"[green]✅ Task {task.id} ready[/] ({task.provider})")
    if task.ip:
        console.print(f"   IP: {task.ip}")
        console.print(f"   Connect: agent-swarm ssh {task.id}")
    else:
        console.print("[yellow]⚠️  VM started but is not reachable yet; check again shortly.[/]")
    return 0


def cmd_list(args) -> int:
    tasks = _orchestrator(args).list_tasks(args.project)

    if args.json:
        print(
            json.dumps(
                [
                    {
                        "task": t.id,
                        "project": t.project,
                        "provider": t.provider,
                        "vm_id": t.vm_id,
                        "status": t.status,
                        "ip": t.ip,
                        "created_at": _fmt_time(t.created_at),
                    }
                    for t in tasks
                ],
                indent=2,
            )
        )
        return 0

    if not tasks:
        console.print("[dim]No task environments.[/]")
        return 0

    table = Table(title="Tasks", border_style="cyan")
    table.add_column("Task", style="bold")
    table.add_column("Project")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("IP")
    table.add_column("Created", style="dim")
    for t in tasks:
        table.add_row(
            t.id, t.project or "-", t.provider, _status_cell(t.status), t.ip or "-", _fmt_time(t.created_at)
        )
    console.print(table)
    return 0


def cmd_start(args) -> int:
    with _spinner(f"[cyan]Starting {args.task}..."):
        task = _orchestrator(args).start_task(args.task)
    console.print(f"[green]Running.[/] IP: {task.ip or '(not yet available)'}")
    return 0


def cmd_stop(args) -> int:
    with _spinner(f"[cyan]Stopping {args.task}..."):
        _orchestrator(args).stop_task(args.task)
    console.print("Stopped.")
    return 0


def cmd_delete(args) -> int:
    with _spinner(f"[cyan]Deleting {args.task}..."):
        _orchestrator(args).delete_task(args.task)
    console.print("Deleted.")
    return 0


def cmd_ssh(args) -> int:
    info, env = _orchestrator(args).connect_task(args.task)
    console.print(f"Connecting to {args.task} ({info.user}@{info.host}:{info.port})...")
    return ssh_interactive(info, env)


def cmd_run(args) -> int:
    info, env = _orchestrator(args).connect_task(args.task)
    return ssh_run(info, " ".join(args.command), env)


def cmd_code(args) -> int:
    return _open_editor(args, _orchestrator(args).task_ssh_info(args.task))


def cmd_cp(args) -> int:
    """Copy files between the host and a task VM (TASK:/path)."""
    src = _REMOTE_PATH.match(args.src)
    dest = _REMOTE_PATH.match(args.dest)
    if src and dest:
        raise SwarmError("Cannot copy between two VMs directly. Copy to local first.")
    if not src and not dest:
        raise SwarmError("One of src or dest must be a VM path (TASK:/path)")

    if src:
        task, remote = src.groups()
        info = _orchestrator(args).task_ssh_info(task)
        scp_from(info, remote, args.dest)
    else:
        task, remote = dest.groups()
        info = _orchestrator(args).task_ssh_info(task)
        scp_to(info, args.src, remote)
    return 0


# ── bulk ─────────────────────────────────────────────────────────────────────


def _print_bulk(result: BulkResult, verb: str) -> int:
    table = Table(border_style="cyan")
    table.add_column("Task", style="bold")
    table.add_column("Result")
    table.add_column("Detail")
    for outcome in result.outcomes:
        mark = "[green]ok[/]" if outcome.ok else "[red]failed[/]"
        table.add_row(outcome.id, mark, outcome.detail or "")
    console.print(table)
    console.print(result.summary(verb))
    return 0 if result.success else 1


def cmd_bulk_create(args) -> int:
    with _spinner(f"[cyan]Creating {len(args.tasks)} task(s) from {args.project}..."):
        result = _orchestrator(args).bulk_create(args.project, args.tasks)
    return _print_bulk(result, "created")


def cmd_bulk_delete(args) -> int:
    orch = _orchestrator(args)
    if args.project:
        with _spinner(f"[cyan]Deleting all tasks of {args.project}..."):
            result = orch.bulk_delete_project_tasks(args.project)
    else:
        if not args.tasks:
            raise SwarmError("Usage: agent-swarm bulk delete <TASK...> | --project <NAME>")
        with _spinner(f"[cyan]Deleting {len(args.tasks)} task(s)..."):
            result = orch.bulk_delete(args.tasks)
    return _print_bulk(result, "deleted")


# ── env ──────────────────────────────────────────────────────────────────────


def cmd_env_set(args) -> int:
    _secrets(args).set(args.key, args.value, args.project or "")
    console.print(f"Set {args.key} ({_scope_label(args.project)})")
    return 0


def cmd_env_get(args) -> int:
    print(_secrets(args).get(args.key, args.project or ""))
    return 0


def cmd_env_list(args) -> int:
    backend = _secrets(args)
    if args.project:
        names = sorted(backend.resolve(args.project))
        if not names:
            console.print(f"[dim]No env vars configured for project {args.project}.[/]")
            return 0
        console.print(f"Env vars for project {args.project} (resolved):")
    else:
        names = [name for name, _ in backend.list("")]
        if not names:
            console.print(
                "[dim]No global env vars configured. "
                "Set one with: agent-swarm env set <KEY> <VALUE>[/]"
            )
            return 0
        console.print("Global env vars:")
    for name in names:
        console.print(f"  {name}")
    return 0


def cmd_env_rm(args) -> int:
    scope = args.project or ""
    if not _secrets(args).remove(args.key, scope):
        raise SecretNotFoundError(args.key, scope)
    console.print(f"Removed {args.key} ({_scope_label(args.project)})")
    return 0


# ── checkpoints ──────────────────────────────────────────────────────────────


def cmd_checkpoint(args) -> int:
    with _spinner(f"[cyan]Checkpointing {args.task}..."):
        name = _orchestrator(args).checkpoint(args.task, args.name)
    console.print(f"[green]✅ Checkpoint created: {name}[/] (VM is stopped)")
    return 0


def cmd_checkpoints(args) -> int:
    names = _orchestrator(args).list_checkpoints(args.task)
    if not names:
        console.print(f"[dim]No checkpoints for {args.task}.[/]")
        return 0
    for name in names:
        console.print(f"  {name}")
    return 0


def cmd_restore(args) -> int:
    with _spinner(f"[cyan]Restoring {args.task}..."):
        name = _orchestrator(args).restore(args.task, args.name)
    console.print(f"[green]✅ Restored {args.task} to {name}[/] (VM is stopped)")
    return 0


# ── host ─────────────────────────────────────────────────────────────────────


def cmd_status(args) -> int:
    overview = _orchestrator(args).status_overview()
    console.print(f"Projects: {overview.projects}")
    console.print(
        f"Tasks:    {overview.tasks} total "
        f"({overview.running_tasks} running, {overview.stopped_tasks} stopped)"
    )
    console.print("\nProviders:")
    for name, available in overview.providers:
        mark = "[green]available[/]" if available else "[dim]not available[/]"
        console.print(f"  {name}: {mark}")
    base = overview.base_image or "not found (run agent-swarm init-base)"
    console.print(f"\nBase image: {base}")
    return 0


def cmd_providers(args) -> int:
    table = Table(title="Providers", border_style="cyan")
    table.add_column("Provider", style="bold")
    table.add_column("Available")
    for name, available in _orchestrator(args).detector.availability():
        table.add_row(name, "[green]yes[/]" if available else "[dim]no[/]")
    console.print(table)
    return 0


def cmd_init_base(args) -> int:
    """Download and convert the default base image."""
    container = args.container
    config = container.resolve(SwarmConfig)
    with _spinner("[cyan]Preparing base image (this can take a while)..."):
        path, created = prepare_base_image(
            container.resolve(ProcessRunner), helper=config.vm_helper
        )
    if created:
        console.print(f"[green]✅ Base image ready: {path}[/]")
    else:
        console.print(f"Base image already present: {path}")
    return 0


# ── parser ───────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-swarm", description="Disposable, isolated VMs for parallel agents"
    )
    parser.add_argument("--version", action="version", version=f"agent-swarm {__version__}")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: from config, WARNING)",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON")
    parser.add_argument("--log-file", type=Path, help="Also write JSON logs to this file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Project commands
    project_parser = subparsers.add_parser("project", help="Manage golden project VMs")
    project_sub = project_parser.add_subparsers(dest="project_command", help="Project commands")

    p_create = project_sub.add_parser("create", help="Create a project VM from the base image")
    p_create.add_argument("name", help="Project name")
    p_create.add_argument("--base-image", help="Base image path (default: prepared image)")
    p_create.add_argument("--provider", help="Force a provider instead of auto-detecting")
    p_create.set_defaults(func=cmd_project_create)

    p_list = project_sub.add_parser("list", aliases=["ls"], help="List projects")
    p_list.add_argument("--json", action="store_true", help="Output JSON")
    p_list.set_defaults(func=cmd_project_list)

    for verb, func, text in (
        ("start", cmd_project_start, "Start a project VM"),
        ("stop", cmd_project_stop, "Stop a project VM"),
        ("delete", cmd_project_delete, "Delete a project VM (no tasks may remain)"),
        ("ssh", cmd_project_ssh, "Open a shell in a project VM"),
    ):
        sub = project_sub.add_parser(verb, help=text)
        sub.add_argument("name", help="Project name")
        sub.set_defaults(func=func)

    p_run = project_sub.add_parser("run", help="Run a command in a project VM")
    p_run.add_argument("name", help="Project name")
    p_run.add_argument("command", nargs=argparse.REMAINDER, help="Command to run")
    p_run.set_defaults(func=cmd_project_run)

    p_code = project_sub.add_parser("code", help="Open a project VM in VS Code (Remote-SSH)")
    p_code.add_argument("name", help="Project name")
    p_code.add_argument("path", nargs="?", default=None, help="Remote folder (default: home)")
    p_code.set_defaults(func=cmd_project_code)

    # Task commands
    create_parser = subparsers.add_parser("create", help="Clone a task VM from a project")
    create_parser.add_argument("project", help="Project name")
    create_parser.add_argument("task", help="Task id")
    create_parser.set_defaults(func=cmd_create)

    list_parser = subparsers.add_parser("list", aliases=["ls"], help="List task VMs")
    list_parser.add_argument("--project", help="Only tasks of this project")
    list_parser.add_argument("--json", action="store_true", help="Output JSON")
    list_parser.set_defaults(func=cmd_list)

    for verb, func, text in (
        ("start", cmd_start, "Start a task VM"),
        ("stop", cmd_stop, "Stop a task VM"),
        ("delete", cmd_delete, "Delete a task VM"),
        ("ssh", cmd_ssh, "Open a shell in a task VM"),
        ("checkpoints", cmd_checkpoints, "List checkpoints of a task VM"),
    ):
        sub = subparsers.add_parser(verb, help=text)
        sub.add_argument("task", help="Task id")
        sub.set_defaults(func=func)

    run_parser = subparsers.add_parser("run", help="Run a command in a task VM")
    run_parser.add_argument("task", help="Task id")
    run_parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run")
    run_parser.set_defaults(func=cmd_run)

    code_parser = subparsers.add_parser("code", help="Open a task VM in VS Code (Remote-SSH)")
    code_parser.add_argument("task", help="Task id")
    code_parser.add_argument("path", nargs="?", default=None, help="Remote folder (default: home)")
    code_parser.set_defaults(func=cmd_code)

    cp_parser = subparsers.add_parser("cp",help="Copy files to or from a task VM")
    cp_parser.add_argument("src", help="Source (local path or TASK:/path)")
    cp_parser.add_argument("dest", help="Destination (local path or TASK:/path)")
    cp_parser.set_defaults(func=cmd_cp)

    # Bulk commands
    bulk_parser = subparsers.add_parser("bulk", help="Create or delete many tasks in parallel")
    bulk_sub = bulk_parser.add_subparsers(dest="bulk_command", help="Bulk commands")

    b_create = bulk_sub.add_parser("create", help="Clone several tasks from one project")
    b_create.add_argument("project", help="Project name")
    b_create.add_argument("tasks", nargs="+", help="Task ids")
    b_create.set_defaults(func=cmd_bulk_create)

    b_delete = bulk_sub.add_parser("delete", help="Delete several tasks")
    b_delete.add_argument("tasks", nargs="*", help="Task ids")
    b_delete.add_argument("--project", help="Delete every task of this project")
    b_delete.set_defaults(func=cmd_bulk_delete)

    # Env commands
    env_parser = subparsers.add_parser("env", help="Manage encrypted session variables")
    env_sub = env_parser.add_subparsers(dest="env_command", help="Env commands")

    e_set = env_sub.add_parser("set", help="Set a variable")
    e_set.add_argument("key", help="Variable name")
    e_set.add_argument("value", help="Variable value")
    e_set.add_argument("--project", help="Scope to a project (default: global)")
    e_set.set_defaults(func=cmd_env_set)

    e_get = env_sub.add_parser("get", help="Print a variable's value")
    e_get.add_argument("key", help="Variable name")
    e_get.add_argument("--project", help="Project scope (default: global)")
    e_get.set_defaults(func=cmd_env_get)

    e_list = env_sub.add_parser("list", aliases=["ls"], help="List variable names")
    e_list.add_argument("--project", help="Show names resolved for a project")
    e_list.set_defaults(func=cmd_env_list)

    e_rm = env_sub.add_parser("rm", help="Remove a variable")
    e_rm.add_argument("key", help="Variable name")
    e_rm.add_argument("--project", help="Project scope (default: global)")
    e_rm.set_defaults(func=cmd_env_rm)

    # Checkpoint commands
    cp_create = subparsers.add_parser("checkpoint", help="Stop a task VM and save its disk")
    cp_create.add_argument("task", help="Task id")
    cp_create.add_argument("name", nargs="?", default=None, help="Checkpoint name (default: timestamp)")
    cp_create.set_defaults(func=cmd_checkpoint)

    restore_parser = subparsers.add_parser("restore", help="Restore a task VM from a checkpoint")
    restore_parser.add_argument("task", help="Task id")
    restore_parser.add_argument("name", nargs="?", default=None, help="Checkpoint name (default: latest)")
    restore_parser.set_defaults(func=cmd_restore)

    # Host commands
    subparsers.add_parser("status", help="Summary of projects, tasks and providers").set_defaults(
        func=cmd_status
    )
    subparsers.add_parser("providers", help="Show provider availability").set_defaults(
        func=cmd_providers
    )
    subparsers.add_parser("init-base", help="Download and prepare the base image").set_defaults(
        func=cmd_init_base
    )

    return parser


def main(
    argv: Optional[List[str]] = None, container: Optional[DependencyContainer] = None
) -> int:
    """Main entry point.

    The service container is built here unless one is passed in, and handed
    to every command as ``args.container``.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    owned = container is None
    args.container = container or create_default_container()
    try:
        level = args.log_level or args.container.resolve(SwarmConfig).log_level
        configure_logging(level=level, json_output=args.json_logs, log_file=args.log_file)
        return args.func(args) or 0
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/]")
        return 1
    except SwarmError as e:
        console.print(f"[red]error:[/] {escape(str(e))}")
        return 1
    except ValidationError as e:
        console.print(f"[red]error:[/] invalid configuration: {escape(str(e))}")
        return 1
    finally:
        if owned:
            args.container.reset()


if __name__ == "__main__":
    sys.exit(main())
