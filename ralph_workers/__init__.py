"""Shared code for running AI coding agents in ralph worker containers."""

from ralph_workers.constants import CONTAINER_PREFIX, VERSION
from ralph_workers.docker import (
    ContainerRuntime,
    ContainerSpec,
    ContainerState,
    ContainerSummary,
    DockerCli,
    ExecResult,
    Mount,
)
from ralph_workers.errors import (
    AlreadyRunning,
    ContainerRuntimeError,
    CredentialMissing,
    EngineUnavailable,
    ImageMissing,
    RalphError,
    RuntimeConflict,
    RuntimeNotFound,
    TaskSelectionError,
    WorkerNotFound,
    WorkerNotRunning,
)
from ralph_workers.lifecycle import WorkerHandle, WorkerManager
from ralph_workers.models import ProjectConfig, parse_config
from ralph_workers.notify import Notification, Notifier
from ralph_workers.project import Project, load_project, try_load_project
from ralph_workers.status import PromptMatcher, WorkerState, classify
from ralph_workers.tasks import TaskKind, TaskRef, container_name, parse_container_name, parse_task_args
from ralph_workers.watch import NotificationTracker, watch


__all__ = [
    'CONTAINER_PREFIX',
    'VERSION',
    'AlreadyRunning',
    'ContainerRuntime',
    'ContainerRuntimeError',
    'ContainerSpec',
    'ContainerState',
    'ContainerSummary',
    'CredentialMissing',
    'DockerCli',
    'EngineUnavailable',
    'ExecResult',
    'ImageMissing',
    'Mount',
    'Notification',
    'NotificationTracker',
    'Notifier',
    'Project',
    'ProjectConfig',
    'PromptMatcher',
    'RalphError',
    'RuntimeConflict',
    'RuntimeNotFound',
    'TaskKind',
    'TaskRef',
    'TaskSelectionError',
    'WorkerHandle',
    'WorkerManager',
    'WorkerNotFound',
    'WorkerNotRunning',
    'WorkerState',
    'classify',
    'container_name',
    'load_project',
    'parse_config',
    'parse_container_name',
    'parse_task_args',
    'try_load_project',
    'watch',
]
