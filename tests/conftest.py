"""Shared fixtures: an in-memory container engine and a throwaway project."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from ralph_workers.docker import ContainerSpec, ContainerState, ContainerSummary, ExecResult
from ralph_workers.errors import ContainerRuntimeError, EngineUnavailable, RuntimeConflict, RuntimeNotFound
from ralph_workers.project import Project, load_project


@dataclass
class FakeContainer:
    name: str
    image: str = ''
    running: bool = True
    exit_code: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    processes: list[str] = field(default_factory=lambda: ['bash', 'opencode'])
    log_lines: list[tuple[datetime | None, str]] = field(default_factory=list)
    exec_outputs: dict[str, str] = field(default_factory=dict)
    exec_error: bool = False
    spec: ContainerSpec | None = None

    @property
    def status(self) -> str:
        if self.running:
            return 'Up 5 minutes'
        return f'Exited ({self.exit_code}) 1 minute ago'


class FakeRuntime:
    """In-memory ``ContainerRuntime`` with just enough engine behaviour for tests."""

    def __init__(self):
        self.containers: dict[str, FakeContainer] = {}
        self.images: set[str] = set()
        self.created: list[ContainerSpec] = []
        self.removed: list[str] = []
        self.create_conflict = False
        self.engine_down = False
        self.pruned = False

    # -- test helpers ------------------------------------------------------

    def add(self, name: str, **kwargs) -> FakeContainer:
        container = FakeContainer(name=name, **kwargs)
        self.containers[name] = container
        return container

    def finish(self, name: str, exit_code: int = 0) -> None:
        container = self.containers[name]
        container.running = False
        container.exit_code = exit_code

    def _get(self, name: str) -> FakeContainer:
        self._check_engine()
        try:
            return self.containers[name]
        except KeyError:
            raise RuntimeNotFound(f'No such container: {name}') from None

    def _check_engine(self) -> None:
        if self.engine_down:
            raise EngineUnavailable('Cannot connect to the Docker daemon')

    # -- ContainerRuntime --------------------------------------------------

    def image_exists(self, image: str) -> bool:
        self._check_engine()
        return image in self.images

    def container_exists(self, name: str) -> bool:
        self._check_engine()
        return name in self.containers

    def container_running(self, name: str) -> bool:
        self._check_engine()
        container = self.containers.get(name)
        return container is not None and container.running

    def inspect(self, name: str) -> ContainerState:
        container = self._get(name)
        return ContainerState(
            name=name,
            status='running' if container.running else 'exited',
            running=container.running,
            exit_code=container.exit_code,
            started_at='2024-05-01T10:00:00Z',
            finished_at=None if container.running else '2024-05-01T11:00:00Z',
            image=container.image,
            labels=dict(container.labels),
        )

    def create(self, spec: ContainerSpec) -> str:
        self._check_engine()
        if self.create_conflict or spec.name in self.containers:
            raise RuntimeConflict(f'Conflict. The container name "/{spec.name}" is already in use')
        self.created.append(spec)
        self.add(spec.name, image=spec.image, labels=dict(spec.labels), spec=spec)
        return f'id-{spec.name}'

    def exec(self, name: str, command: list[str], *, workdir: str | None = None) -> ExecResult:
        container = self._get(name)
        if container.exec_error:
            raise ContainerRuntimeError('exec failed', stderr='OCI runtime exec failed')
        if not container.running:
            raise RuntimeConflict(f'Container {name} is not running')
        if command[:1] == ['ps']:
            return ExecResult(stdout='\n'.join(container.processes) + '\n', exit_code=0)
        key = ' '.join(command)
        if key in container.exec_outputs:
            return ExecResult(stdout=container.exec_outputs[key], exit_code=0)
        return ExecResult(stdout='', exit_code=1, stderr='fatal: not a git repository')

    def logs(
        self,
        name: str,
        *,
        follow: bool = False,
        tail: int | None = None,
        timestamps: bool = False,
    ) -> Iterator[str]:
        container = self._get(name)
        lines = container.log_lines[-tail:] if tail else container.log_lines
        rendered = []
        for stamp, text in lines:
            if timestamps and stamp is not None:
                rendered.append(f'{stamp.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")}000Z {text}')
            else:
                rendered.append(text)
        return iter(rendered)

    def stop(self, name: str) -> None:
        container = self._get(name)
        if not container.running:
            raise RuntimeConflict(f'Container {name} is not running')
        container.running = False
        container.exit_code = 143

    def remove(self, name: str) -> None:
        container = self._get(name)
        if container.running:
            raise RuntimeConflict(f'You cannot remove a running container {name}')
        del self.containers[name]
        self.removed.append(name)

    def list_by_prefix(self, prefix: str, *, status: str | None = None) -> list[ContainerSummary]:
        self._check_engine()
        rows = []
        for name, container in sorted(self.containers.items()):
            if not name.startswith(prefix):
                continue
            if status == 'running' and not container.running:
                continue
            if status == 'exited' and container.running:
                continue
            rows.append(ContainerSummary(name=name, status=container.status))
        return rows

    # -- DockerCli extras used by the command line ------------------------

    def exec_argv(
        self,
        name: str,
        command: list[str],
        *,
        interactive: bool = False,
        workdir: str | None = None,
    ) -> list[str]:
        cmd = ['docker', 'exec']
        if interactive:
            cmd.append('-it')
        if workdir:
            cmd.extend(['-w', workdir])
        return [*cmd, name, *command]

    def prune_images(self) -> str:
        self.pruned = True
        return ''


def write_config(root: Path, config: dict) -> Path:
    config_dir = root / '.ralph'
    config_dir.mkdir(parents=True, exist_ok=True)
    config_file = config_dir / 'config.json'
    config_file.write_text(json.dumps(config))
    return config_file


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / 'myapp'
    write_config(root, {'repo': 'acme/myapp'})
    return root


@pytest.fixture
def project(project_root: Path) -> Project:
    return load_project(project_root)


@pytest.fixture
def home(tmp_path: Path) -> Path:
    home = tmp_path / 'home'
    home.mkdir()
    return home


def recent(seconds_ago: float = 0) -> datetime:
    return datetime.now(UTC) - timedelta(seconds=seconds_ago)
