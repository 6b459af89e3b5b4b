"""Task selection: turn CLI tokens into a canonical task identifier.

A task identifier has the shape ``<kind>-<value>`` (``issue-42``,
``prd-sprint.json``, ``prompt-1718000000``, ``auto-1718000000``) and maps
deterministically to a worker container name::

    <prefix>-<project>-<normalized task id>

where normalization lowercases the id and collapses every run of characters
outside ``[a-z0-9]`` into a single hyphen.
"""

from __future__ import annotations

import re
import time
from enum import StrEnum
from pathlib import PurePath

from pydantic import BaseModel, ConfigDict, model_validator

from ralph_workers.constants import CONTAINER_PREFIX
from ralph_workers.errors import TaskSelectionError
from ralph_workers.models import TaskMode


class TaskKind(StrEnum):
    issue = 'issue'
    prd = 'prd'
    prompt = 'prompt'
    auto = 'auto'


_SELECTORS: dict[str, TaskKind] = {
    '--issue': TaskKind.issue,
    '--task': TaskKind.issue,
    'issue': TaskKind.issue,
    '--prd': TaskKind.prd,
    'prd': TaskKind.prd,
    '--prompt': TaskKind.prompt,
    'prompt': TaskKind.prompt,
}

# Flags owned by individual commands; the resolver steps over them.
_PASSTHROUGH = frozenset({'-f', '--follow', '-a', '--all'})

_DIGITS = re.compile(r'[0-9]+')
_KIND_SPLIT = re.compile(r'-(?=(?:issue|prd|prompt|auto)-)')


class TaskRef(BaseModel):
    """A unit of work: what the agent is asked to do, and its identifier."""

    model_config = ConfigDict(frozen=True)

    kind: TaskKind
    value: str = ''
    task_id: str

    @model_validator(mode='before')
    @classmethod
    def derive_task_id(cls, data: object) -> object:
        if isinstance(data, dict) and not data.get('task_id'):
            kind = TaskKind(data['kind'])
            data = {**data, 'task_id': default_task_id(kind, data.get('value', ''))}
        return data

    def entrypoint_args(self) -> list[str]:
        """Arguments handed to the container entrypoint for this task."""
        if self.kind is TaskKind.auto:
            return []
        return [f'--{self.kind}', self.value]

    def describe(self) -> str:
        if self.kind is TaskKind.auto:
            return 'auto (config)'
        return f'{self.kind} = {self.value}'


def default_task_id(kind: TaskKind, value: str) -> str:
    if kind is TaskKind.prd:
        return f'prd-{PurePath(value).name}'
    if not value:
        return str(kind)
    return f'{kind}-{value}'


def normalize_task_id(task_id: str) -> str:
    """Lowercase and collapse non-alphanumeric runs to a single hyphen."""
    return re.sub(r'[^a-z0-9]+', '-', task_id.lower()).strip('-')


def task_from_id(task_id: str) -> TaskRef:
    """Wrap a raw identifier typed by the user (``issue-42``, ``prd-x.json``).

    Identifiers without a recognised kind prefix are kept verbatim under the
    ``prompt`` kind, whose identifiers are free-form.
    """
    kind_str, sep, value = task_id.partition('-')
    if sep and value and kind_str in TaskKind.__members__:
        kind = TaskKind(kind_str)
        if kind in (TaskKind.issue, TaskKind.prd):
            return TaskRef(kind=kind, value=value, task_id=task_id)
        return TaskRef(kind=kind, task_id=task_id)
    return TaskRef(kind=TaskKind.prompt, task_id=task_id)


def parse_task_args(
    tokens: list[str],
    *,
    mode: TaskMode | str = TaskMode.github,
    for_start: bool = False,
    now: float | None = None,
) -> TaskRef | None:
    """Resolve CLI tokens to a single task.

    Accepts ``--issue N``/``--task N``/``issue N``, ``--prd FILE``/``prd FILE``,
    ``--prompt TEXT``/``prompt TEXT``, bare numbers (joined digit by digit, so
    ``2 1 9`` is issue 219) and, outside ``start``, one raw task identifier.

    An explicit selector always wins over bare numbers. Two different
    selectors are rejected. With no selector, ``start`` gets an ``auto`` task
    and every other command gets ``None``.
    """
    selected: tuple[TaskKind, str] | None = None
    digits = ''
    raw_id: str | None = None

    i = 0
    while i < len(tokens):
        token = tokens[i]
        kind = _SELECTORS.get(token)
        if kind is not None:
            if i + 1 >= len(tokens) or not tokens[i + 1]:
                raise TaskSelectionError(f'{token} requires a value')
            value = tokens[i + 1]
            if selected is not None and selected != (kind, value):
                raise TaskSelectionError(
                    f'Conflicting task selectors: {selected[0]} {selected[1]!r} and {kind} {value!r}'
                )
            selected = (kind, value)
            i += 2
            continue

        if token in _PASSTHROUGH:
            pass
        elif _DIGITS.fullmatch(token):
            digits += token
        elif for_start:
            raise TaskSelectionError(f'Unknown option: {token}')
        elif raw_id is None:
            raw_id = token
        else:
            raise TaskSelectionError(f'Unexpected argument: {token}')
        i += 1

    timestamp = int(time.time() if now is None else now)

    if selected is not None:
        if raw_id is not None:
            raise TaskSelectionError(f'Conflicting task selectors: {selected[0]} {selected[1]!r} and {raw_id!r}')
        return _selected_task(*selected, for_start=for_start, timestamp=timestamp)

    if digits:
        if raw_id is not None:
            raise TaskSelectionError(f'Conflicting task selectors: {digits!r} and {raw_id!r}')
        if for_start and mode != TaskMode.github:
            raise TaskSelectionError(
                'Bare numbers only work in github mode',
                hint='Use --prd or --prompt instead.',
            )
        return TaskRef(kind=TaskKind.issue, value=digits)

    if raw_id is not None:
        return task_from_id(raw_id)

    if for_start:
        return TaskRef(kind=TaskKind.auto, task_id=f'auto-{timestamp}')
    return None


def _selected_task(kind: TaskKind, value: str, *, for_start: bool, timestamp: int) -> TaskRef:
    if kind is TaskKind.issue:
        number = value.lstrip('#')
        if not _DIGITS.fullmatch(number):
            raise TaskSelectionError(f'Issue number must be numeric, got: {value!r}')
        return TaskRef(kind=kind, value=number)
    if kind is TaskKind.prd:
        return TaskRef(kind=kind, value=value)
    # prompt: free text has no natural key
    if for_start:
        return TaskRef(kind=kind, value=value, task_id=f'prompt-{timestamp}')
    return task_from_id(value)


# ---------------------------------------------------------------------------
# Container naming
# ---------------------------------------------------------------------------


def container_name(project: str, task_id: str) -> str:
    return f'{CONTAINER_PREFIX}-{project}-{normalize_task_id(task_id)}'


def project_prefix(project: str | None = None) -> str:
    """Name prefix shared by all workers (of one project, when given)."""
    if project:
        return f'{CONTAINER_PREFIX}-{project}-'
    return f'{CONTAINER_PREFIX}-'


def candidate_names(project: str, task_id: str) -> list[str]:
    """Names to probe when a user refers to a task within a project."""
    names = [container_name(project, task_id)]
    if not task_id.startswith('issue-'):
        names.append(container_name(project, f'issue-{task_id}'))
    return names


def parse_container_name(name: str, project: str | None = None) -> TaskRef | None:
    """Recover the task from a worker name produced by :func:`container_name`.

    Exact for ``issue`` tasks and for ``prd`` basenames already in normalized
    form. ``prompt`` and ``auto`` tasks come back without their value.
    """
    prefix = project_prefix()
    if not name.startswith(prefix):
        return None
    rest = name[len(prefix) :]

    if project is not None:
        if not rest.startswith(f'{project}-'):
            return None
        task_id = rest[len(project) + 1 :]
    else:
        match = _KIND_SPLIT.search(rest)
        if match is None:
            return None
        task_id = rest[match.end() :]

    kind_str, _, value = task_id.partition('-')
    if kind_str not in TaskKind.__members__ or not value:
        return None
    kind = TaskKind(kind_str)
    if kind in (TaskKind.issue, TaskKind.prd):
        return TaskRef(kind=kind, value=value, task_id=task_id)
    return TaskRef(kind=kind, task_id=task_id)


def split_container_name(name: str) -> tuple[str, str]:
    """Best-effort ``(project, task_id)`` for display."""
    task = parse_container_name(name)
    rest = name[len(project_prefix()) :] if name.startswith(project_prefix()) else name
    if task is None:
        project, _, task_id = rest.rpartition('-')
        return project, task_id
    return rest[: -len(task.task_id) - 1], task.task_id
