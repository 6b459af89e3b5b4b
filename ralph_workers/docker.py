"""Docker CLI adapter for ralph worker containers.

Everything goes through the ``docker`` binary via :mod:`subprocess`. The
adapter holds no state: every call asks the engine afresh. Engine failures
are raised as tagged :class:`~ralph_workers.errors.ContainerRuntimeError`
subclasses so callers can tell "not found" from "engine down" from
"conflicting state".
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Protocol, runtime_checkable

from ralph_workers.constants import BASE_DOCKERFILE, BASE_IMAGE, DOCKER_SOCKET
from ralph_workers.errors import (
    ContainerRuntimeError,
    EngineUnavailable,
    RuntimeConflict,
    RuntimeNotFound,
)


logger = logging.getLogger(__name__)

_UNAVAILABLE_MARKERS = (
    'cannot connect to the docker daemon',
    'is the docker daemon running',
    'error during connect',
    'permission denied while trying to connect',
)
_NOT_FOUND_MARKERS = ('no such container', 'no such image', 'no such object', 'not found')
_CONFLICT_MARKERS = ('is already in use', 'conflict', 'is not running', 'is already in progress', 'is restarting')

_EXIT_CODE = re.compile(r'Exited \((-?\d+)\)')


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass
class Mount:
    source: str
    target: str
    read_only: bool = True

    def to_arg(self) -> str:
        suffix = ':ro' if self.read_only else ''
        return f'{self.source}:{self.target}{suffix}'


@dataclass
class ContainerSpec:
    """Everything ``docker run`` needs to create one worker."""

    name: str
    image: str
    cpus: str = '2'
    memory: str = '4g'
    env: dict[str, str] = field(default_factory=dict)
    # Passed as ``-e NAME`` with the value supplied through the process
    # environment, so tokens never appear in the argument vector.
    secrets: dict[str, str] = field(default_factory=dict)
    mounts: list[Mount] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    group_add: list[str] = field(default_factory=list)
    workdir: str | None = None
    args: list[str] = field(default_factory=list)

    def to_run_args(self) -> list[str]:
        """Arguments following ``docker`` for a detached ``docker run``."""
        cmd = [
            'run',
            '--detach',
            '--name',
            self.name,
            f'--cpus={self.cpus}',
            f'--memory={self.memory}',
        ]
        for gid in self.group_add:
            cmd.extend(['--group-add', gid])
        for key, value in self.env.items():
            cmd.extend(['-e', f'{key}={value}'])
        for key in self.secrets:
            cmd.extend(['-e', key])
        for mount in self.mounts:
            cmd.extend(['-v', mount.to_arg()])
        for key, value in self.labels.items():
            cmd.extend(['--label', f'{key}={value}'])
        if self.workdir:
            cmd.extend(['-w', self.workdir])
        cmd.append(self.image)
        cmd.extend(self.args)
        return cmd


@dataclass
class ContainerSummary:
    """One row of ``docker ps -a``."""

    name: str
    status: str

    @property
    def is_up(self) -> bool:
        return self.status.startswith('Up')

    @property
    def exit_code(self) -> int | None:
        match = _EXIT_CODE.search(self.status)
        return int(match.group(1)) if match else None

    @property
    def uptime(self) -> str:
        if not self.is_up:
            return '-'
        return self.status[len('Up ') :]


@dataclass
class ContainerState:
    """The subset of ``docker inspect`` the orchestrator reads."""

    name: str
    status: str
    running: bool
    exit_code: int
    started_at: str | None = None
    finished_at: str | None = None
    image: str = ''
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_inspect(cls, data: dict) -> ContainerState:
        state = data.get('State', {})
        finished = state.get('FinishedAt')
        if finished and finished.startswith('0001-01-01'):
            finished = None
        config = data.get('Config', {})
        return cls(
            name=data.get('Name', '').lstrip('/'),
            status=state.get('Status', 'unknown'),
            running=bool(state.get('Running')),
            exit_code=int(state.get('ExitCode', 0)),
            started_at=state.get('StartedAt'),
            finished_at=finished,
            image=config.get('Image', ''),
            labels=config.get('Labels') or {},
        )


@dataclass
class ExecResult:
    stdout: str
    exit_code: int
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Runtime protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ContainerRuntime(Protocol):
    """Capabilities the orchestrator needs from a container engine."""

    def image_exists(self, image: str) -> bool: ...

    def container_exists(self, name: str) -> bool: ...

    def container_running(self, name: str) -> bool: ...

    def inspect(self, name: str) -> ContainerState: ...

    def create(self, spec: ContainerSpec) -> str: ...

    def exec(self, name: str, command: list[str], *, workdir: str | None = None) -> ExecResult: ...

    def logs(
        self,
        name: str,
        *,
        follow: bool = False,
        tail: int | None = None,
        timestamps: bool = False,
    ) -> Iterator[str]: ...

    def stop(self, name: str) -> None: ...

    def remove(self, name: str) -> None: ...

    def list_by_prefix(self, prefix: str, *, status: str | None = None) -> list[ContainerSummary]: ...


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def classify_engine_error(command: list[str], stderr: str) -> ContainerRuntimeError:
    """Map ``docker`` stderr to the matching tagged error."""
    text = stderr.strip()
    lowered = text.lower()
    message = text.splitlines()[-1] if text else f'{shlex.join(command)} failed'
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        return EngineUnavailable(message, command=command, stderr=text)
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return RuntimeNotFound(message, command=command, stderr=text)
    if any(marker in lowered for marker in _CONFLICT_MARKERS):
        return RuntimeConflict(message, command=command, stderr=text)
    return ContainerRuntimeError(message, command=command, stderr=text)


# ---------------------------------------------------------------------------
# Docker CLI implementation
# ---------------------------------------------------------------------------


class DockerCli:
    """:class:`ContainerRuntime` backed by the ``docker`` executable."""

    def __init__(self, binary: str = 'docker'):
        self.binary = binary

    def _run(
        self,
        *args: str,
        check: bool = True,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess:
        cmd = [self.binary, *args]
        logger.debug('$ %s', shlex.join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, env=env)
        except FileNotFoundError as exc:
            raise EngineUnavailable(f'{self.binary} executable not found', command=cmd) from exc
        if check and result.returncode != 0:
            raise classify_engine_error(cmd, result.stderr)
        return result

    def _probe(self, *args: str) -> bool:
        """Run an inspect-style command: ``False`` on not-found, raise if the engine is down."""
        result = self._run(*args, check=False)
        if result.returncode == 0:
            return True
        error = classify_engine_error([self.binary, *args], result.stderr)
        if isinstance(error, EngineUnavailable):
            raise error
        return False

    # -- queries -----------------------------------------------------------

    def image_exists(self, image: str) -> bool:
        return self._probe('image', 'inspect', image)

    def container_exists(self, name: str) -> bool:
        return self._probe('container', 'inspect', name)

    def container_running(self, name: str) -> bool:
        result = self._run('container', 'inspect', '-f', '{{.State.Running}}', name, check=False)
        if result.returncode != 0:
            error = classify_engine_error([self.binary, 'container', 'inspect', name], result.stderr)
            if isinstance(error, EngineUnavailable):
                raise error
            return False
        return result.stdout.strip() == 'true'

    def inspect(self, name: str) -> ContainerState:
        result = self._run('container', 'inspect', name)
        data = json.loads(result.stdout)
        return ContainerState.from_inspect(data[0])

    def list_by_prefix(self, prefix: str, *, status: str | None = None) -> list[ContainerSummary]:
        args = ['ps', '-a', '--filter', f'name={prefix}', '--format', '{{.Names}}\t{{.Status}}']
        if status:
            args[2:2] = ['--filter', f'status={status}']
        result = self._run(*args)
        rows = []
        for line in result.stdout.splitlines():
            name, _, container_status = line.partition('\t')
            # the engine's name filter is a substring match
            if name and name.startswith(prefix):
                rows.append(ContainerSummary(name=name, status=container_status))
        return sorted(rows, key=lambda row: row.name)

    # -- mutations ---------------------------------------------------------

    def create(self, spec: ContainerSpec) -> str:
        env = {**os.environ, **spec.secrets} if spec.secrets else None
        result = self._run(*spec.to_run_args(), env=env)
        return result.stdout.strip()

    def stop(self, name: str) -> None:
        self._run('stop', name)

    def remove(self, name: str) -> None:
        self._run('rm', name)

    def build(
        self,
        tag: str,
        context: Path | str,
        *,
        dockerfile: Path | str | None = None,
        build_args: dict[str, str] | None = None,
    ) -> None:
        """Build an image, streaming the engine output to the terminal."""
        cmd = [self.binary, 'build', '-t', tag]
        env = None
        if dockerfile is not None:
            cmd.extend(['-f', str(dockerfile)])
        if build_args:
            # values come from the environment, not the argument vector
            env = {**os.environ, **build_args}
            for key in build_args:
                cmd.extend(['--build-arg', key])
        cmd.append(str(context))
        logger.debug('$ %s', shlex.join(cmd))
        try:
            result = subprocess.run(cmd, env=env)
        except FileNotFoundError as exc:
            raise EngineUnavailable(f'{self.binary} executable not found', command=cmd) from exc
        if result.returncode != 0:
            raise ContainerRuntimeError(f'docker build failed for {tag}', command=cmd)

    def prune_images(self) -> str:
        return self._run('image', 'prune', '-f').stdout.strip()

    # -- exec / logs -------------------------------------------------------

    def exec_argv(
        self,
        name: str,
        command: list[str],
        *,
        interactive: bool = False,
        workdir: str | None = None,
    ) -> list[str]:
        cmd = [self.binary, 'exec']
        if interactive:
            cmd.append('-it')
        if workdir:
            cmd.extend(['-w', workdir])
        cmd.append(name)
        cmd.extend(command)
        return cmd

    def exec(self, name: str, command: list[str], *, workdir: str | None = None) -> ExecResult:
        """Run a one-shot command; a non-zero exit of *command* is returned, not raised."""
        cmd = self.exec_argv(name, command, workdir=workdir)
        result = self._run(*cmd[1:], check=False)
        if result.returncode != 0 and _is_engine_failure(result.stderr):
            raise classify_engine_error(cmd, result.stderr)
        return ExecResult(stdout=result.stdout, exit_code=result.returncode, stderr=result.stderr)

    def logs(
        self,
        name: str,
        *,
        follow: bool = False,
        tail: int | None = None,
        timestamps: bool = False,
    ) -> Iterator[str]:
        cmd = [self.binary, 'logs']
        if follow:
            cmd.append('--follow')
        if timestamps:
            cmd.append('--timestamps')
        if tail is not None:
            cmd.extend(['--tail', str(tail)])
        cmd.append(name)

        if not follow:
            # the container's stderr stream arrives on our stderr
            logger.debug('$ %s', shlex.join(cmd))
            try:
                result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
            except FileNotFoundError as exc:
                raise EngineUnavailable(f'{self.binary} executable not found', command=cmd) from exc
            if result.returncode != 0:
                raise classify_engine_error(cmd, result.stdout)
            return iter(result.stdout.splitlines())
        return self._follow(cmd)

    def _follow(self, cmd: list[str]) -> Iterator[str]:
        logger.debug('$ %s', shlex.join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise EngineUnavailable(f'{self.binary} executable not found', command=cmd) from exc

        tail: list[str] = []
        try:
            for line in process.stdout:  # type: ignore[union-attr]
                line = line.rstrip('\n')
                tail = [*tail[-4:], line]
                yield line
            process.wait()
        finally:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()
        if process.returncode not in (0, None) and _is_engine_failure('\n'.join(tail)):
            raise classify_engine_error(cmd, '\n'.join(tail))


def _is_engine_failure(stderr: str) -> bool:
    lowered = stderr.lower()
    return 'error response from daemon' in lowered or any(marker in lowered for marker in _UNAVAILABLE_MARKERS)


# ---------------------------------------------------------------------------
# Host helpers
# ---------------------------------------------------------------------------


def docker_sock_gid(socket: str = DOCKER_SOCKET) -> str:
    """Return the GID of the Docker socket for --group-add."""
    return str(os.stat(socket).st_gid)


def build_base_image(runtime: DockerCli, source_dir: Path, dockerfile: str = BASE_DOCKERFILE) -> None:
    print(f'==> Building {BASE_IMAGE}...')
    runtime.build(BASE_IMAGE, source_dir, dockerfile=source_dir / dockerfile)


def build_project_image(runtime: DockerCli, image: str, build_dir: Path, github_token: str | None = None) -> None:
    print(f'==> Building {image}...')
    build_args = {'GITHUB_TOKEN': github_token} if github_token else None
    runtime.build(image, build_dir, build_args=build_args)
