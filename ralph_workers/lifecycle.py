"""Worker lifecycle: create, look up, restart and stop agent containers.

The container engine is the only source of truth. Nothing is cached between
calls; every operation derives the worker name from the project and task and
asks the engine what exists.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ralph_workers.constants import (
    CONTAINER_HOME,
    CONTAINER_WORKSPACE,
    DEFAULT_CPUS,
    DEFAULT_MEMORY,
    DOCKER_SOCKET,
    LABEL_FOLDER,
    LABEL_PROJECT,
    LABEL_TASK_ID,
    LABEL_TASK_KIND,
    LABEL_TASK_VALUE,
    MOUNT_DOCKER_SOCKET,
)
from ralph_workers.docker import ContainerRuntime, ContainerSpec, Mount, docker_sock_gid
from ralph_workers.errors import (
    AlreadyRunning,
    CredentialMissing,
    ImageMissing,
    ProjectNotFound,
    RuntimeConflict,
    TaskNotRecoverable,
    WorkerNotFound,
    WorkerNotRunning,
)
from ralph_workers.models import TaskMode
from ralph_workers.project import Project, load_project
from ralph_workers.tasks import (
    TaskKind,
    TaskRef,
    candidate_names,
    container_name,
    normalize_task_id,
    parse_container_name,
    project_prefix,
)


logger = logging.getLogger(__name__)

ATTACH_COMMANDS: dict[str, list[str]] = {
    'opencode': ['opencode', '--continue'],
    'claude': ['claude', '--continue'],
}


@dataclass
class WorkerHandle:
    name: str
    project: str
    task: TaskRef | None
    folder: Path | None = None


def task_from_labels(labels: Mapping[str, str]) -> TaskRef | None:
    """Rebuild the task a worker was started with from its labels."""
    kind = labels.get(LABEL_TASK_KIND)
    task_id = labels.get(LABEL_TASK_ID)
    if not kind or not task_id or kind not in TaskKind.__members__:
        return None
    return TaskRef(kind=TaskKind(kind), value=labels.get(LABEL_TASK_VALUE, ''), task_id=task_id)


class WorkerManager:
    """Enforces one worker per (project, task) and assembles ``docker run`` specs.

    Args:
        runtime: Container engine adapter.
        environ: Source of credentials and resource overrides (default ``os.environ``).
        home: Host home directory probed for agent credentials.
        docker_socket: Engine control socket mounted into workers when present.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        environ: Mapping[str, str] | None = None,
        home: Path | None = None,
        docker_socket: Path | None = None,
        mount_docker_socket: bool = MOUNT_DOCKER_SOCKET,
    ):
        self.runtime = runtime
        self.environ = os.environ if environ is None else environ
        self.home = home or Path.home()
        self.docker_socket = docker_socket or Path(DOCKER_SOCKET)
        self.mount_docker_socket = mount_docker_socket

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    def start(self, project: Project, task: TaskRef) -> WorkerHandle:
        name = container_name(project.name, task.task_id)

        if self.runtime.container_exists(name):
            if self.runtime.container_running(name):
                raise AlreadyRunning(name)
            logger.warning('Removing stopped container %s', name)
            self.runtime.remove(name)

        self.preflight(project, task)
        spec = self.build_spec(project, task, name)

        logger.info('Starting container: %s', name)
        logger.info('Project: %s', project.name)
        logger.info('Task: %s', task.describe())
        logger.info('Resources: %s CPUs, %s memory', spec.cpus, spec.memory)

        try:
            self.runtime.create(spec)
        except RuntimeConflict as exc:
            # lost the race against a concurrent start of the same task
            raise AlreadyRunning(name) from exc

        return WorkerHandle(name=name, project=project.name, task=task, folder=project.root)

    def preflight(self, project: Project, task: TaskRef) -> None:
        """Fail before touching any container when the worker cannot succeed."""
        if not self.runtime.image_exists(project.image):
            raise ImageMissing(project.image)

        needs_github = task.kind is TaskKind.issue or (
            task.kind is TaskKind.auto and project.config.mode == TaskMode.github
        )
        if not self.environ.get('GITHUB_TOKEN'):
            if needs_github:
                raise CredentialMissing('GITHUB_TOKEN')
            logger.warning('GITHUB_TOKEN not set. GitHub operations may fail.')

    def build_spec(self, project: Project, task: TaskRef, name: str) -> ContainerSpec:
        mounts = self.probe_mounts(project)
        group_add = []
        if self.mount_docker_socket and self.docker_socket.exists():
            mounts.append(Mount(str(self.docker_socket), DOCKER_SOCKET, read_only=False))
            group_add.append(docker_sock_gid(str(self.docker_socket)))

        secrets = {
            key: self.environ[key]
            for key in ('GITHUB_TOKEN', 'ANTHROPIC_API_KEY')
            if self.environ.get(key)
        }

        return ContainerSpec(
            name=name,
            image=project.image,
            cpus=self.environ.get('RALPH_CPUS') or DEFAULT_CPUS,
            memory=self.environ.get('RALPH_MEMORY') or DEFAULT_MEMORY,
            env={'RALPH_TASK_ID': task.task_id},
            secrets=secrets,
            mounts=mounts,
            labels={
                LABEL_PROJECT: project.name,
                LABEL_FOLDER: str(project.root),
                LABEL_TASK_KIND: str(task.kind),
                LABEL_TASK_VALUE: task.value,
                LABEL_TASK_ID: task.task_id,
            },
            group_add=group_add,
            args=task.entrypoint_args(),
        )

    def probe_mounts(self, project: Project) -> list[Mount]:
        """Read-only mounts for whichever credential/config paths exist on this host."""
        home = self.home
        candidates = [
            (home / '.local' / 'share' / 'opencode' / 'auth.json', f'{CONTAINER_HOME}/.local/share/opencode/auth.json'),
            (home / '.config' / 'opencode', f'{CONTAINER_HOME}/.config/opencode-host'),
            (home / '.config' / 'claude', f'{CONTAINER_HOME}/.config/claude'),
            (home / '.config' / 'anthropic', f'{CONTAINER_HOME}/.config/anthropic'),
            (home / '.claude', f'{CONTAINER_HOME}/.claude'),
            (project.config_dir, f'{CONTAINER_WORKSPACE}/.ralph'),
            (project.root / '.env', f'{CONTAINER_WORKSPACE}/.env'),
        ]
        return [Mount(str(source), target) for source, target in candidates if source.exists()]

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------

    def find(self, task_id: str, project: Project | None = None) -> str:
        """Resolve a task id to the name of an existing worker."""
        if project is not None:
            for name in candidate_names(project.name, task_id):
                if self.runtime.container_exists(name):
                    return name

        suffix = f'-{normalize_task_id(task_id)}'
        for row in self.runtime.list_by_prefix(project_prefix()):
            if row.name.endswith(suffix):
                return row.name
        raise WorkerNotFound(task_id)

    def handle(self, name: str) -> WorkerHandle:
        labels = self.runtime.inspect(name).labels
        project_name = labels.get(LABEL_PROJECT)
        task = task_from_labels(labels) or parse_container_name(name, project_name)
        folder = labels.get(LABEL_FOLDER)
        return WorkerHandle(
            name=name,
            project=project_name or '',
            task=task,
            folder=Path(folder) if folder else None,
        )

    def require_running(self, name: str) -> None:
        if not self.runtime.container_running(name):
            raise WorkerNotRunning(name)

    # ------------------------------------------------------------------
    # restart / stop / clean
    # ------------------------------------------------------------------

    def restart(self, name: str, *, fallback_project: Project | None = None) -> WorkerHandle:
        """Stop *name* and start it again with the same task, from its original folder."""
        handle = self.handle(name)
        task = handle.task
        if task is None or (task.kind is TaskKind.prompt and not task.value):
            raise TaskNotRecoverable(
                f'Cannot determine the task {name} was started with',
                hint='Stop it and start a new task instead.',
            )

        project = load_project(handle.folder) if handle.folder else fallback_project
        if project is None:
            raise ProjectNotFound(f'No project folder recorded for {name}')

        self.preflight(project, task)
        logger.info('Restarting %s from %s', name, project.root)
        self.stop(name)
        return self.start(project, task)

    def stop(self, name: str) -> None:
        try:
            self.runtime.stop(name)
        except RuntimeConflict:
            logger.debug('%s was not running', name)
        self.runtime.remove(name)

    def stop_all(self, project_name: str | None = None) -> list[str]:
        names = [row.name for row in self.runtime.list_by_prefix(project_prefix(project_name), status='running')]
        for name in names:
            self.stop(name)
        return names

    def clean(self) -> list[str]:
        """Remove every exited worker."""
        names = [row.name for row in self.runtime.list_by_prefix(project_prefix(), status='exited')]
        for name in names:
            self.runtime.remove(name)
        return names


def attach_command(agent_cli: str) -> list[str]:
    return ATTACH_COMMANDS.get(agent_cli, ATTACH_COMMANDS['opencode'])
