"""Classify what a worker is doing from the outside.

The agent has no structured status channel, so the state is inferred from
the container status, the process table inside it, and the tail of its log.
Classification never raises: when an inspection fails the worker is
reported as ``idle``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from ralph_workers.constants import AGENT_PROCESS_NAMES, IDLE_SECONDS, LOG_TAIL, WAITING_PATTERNS
from ralph_workers.docker import ContainerRuntime, ContainerSummary
from ralph_workers.errors import ContainerRuntimeError
from ralph_workers.tasks import split_container_name


logger = logging.getLogger(__name__)

_TIMESTAMPED = re.compile(r'^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})\s?(.*)$')


class WorkerState(StrEnum):
    working = 'working'
    waiting = 'waiting'
    idle = 'idle'
    done = 'done'
    failed = 'failed'


STATE_ICONS: dict[WorkerState, str] = {
    WorkerState.working: '⚡',
    WorkerState.waiting: '?',
    WorkerState.idle: '…',
    WorkerState.done: '✓',
    WorkerState.failed: '✗',
}


class PromptMatcher:
    """Ordered waiting-for-input rules.

    A rule is a plain substring, or a regular expression when prefixed with
    ``re:`` (matched case-insensitively, per line).
    """

    def __init__(self, patterns: Iterable[str] = WAITING_PATTERNS):
        self.patterns = list(patterns)
        self._rules = [(pattern, _compile_rule(pattern)) for pattern in self.patterns]

    def extend(self, patterns: Iterable[str]) -> PromptMatcher:
        return PromptMatcher([*self.patterns, *patterns])

    def match(self, lines: Iterable[str]) -> str | None:
        """Return the first rule matching any line, or ``None``."""
        lines = list(lines)
        for pattern, rule in self._rules:
            if any(rule(line) for line in lines):
                return pattern
        return None


def _compile_rule(pattern: str):
    if pattern.startswith('re:'):
        regex = re.compile(pattern[3:], re.IGNORECASE)
        return lambda line: regex.search(line) is not None
    return lambda line: pattern in line


def parse_log_line(line: str) -> tuple[datetime | None, str]:
    """Split a ``docker logs --timestamps`` line into (UTC time, text)."""
    match = _TIMESTAMPED.match(line)
    if match is None:
        return None, line
    base, fraction, zone, text = match.groups()
    # fromisoformat takes at most microseconds; the engine prints nanoseconds
    fraction = (fraction or '')[:7]
    zone = '+00:00' if zone == 'Z' else zone
    try:
        stamp = datetime.fromisoformat(f'{base}{fraction}{zone}')
    except ValueError:
        return None, line
    return stamp.astimezone(UTC), text


def agent_process(runtime: ContainerRuntime, name: str) -> str | None:
    """First recognised agent process running inside *name*, if any.

    Raises ContainerRuntimeError when the process table cannot be read.
    """
    result = runtime.exec(name, ['ps', '-o', 'comm='])
    if not result.ok:
        raise ContainerRuntimeError(f'ps failed in {name}', stderr=result.stderr)
    for process in result.stdout.split():
        if process in AGENT_PROCESS_NAMES:
            return process
    return None


def classify(
    runtime: ContainerRuntime,
    name: str,
    *,
    status: str | None = None,
    matcher: PromptMatcher | None = None,
    now: datetime | None = None,
    idle_seconds: float = IDLE_SECONDS,
    tail: int = LOG_TAIL,
) -> WorkerState:
    """Classify one worker; first matching rule wins.

    1. Not up: ``done`` on exit code 0, ``failed`` otherwise.
    2. No agent process inside: ``done`` (container kept alive for follow-up).
    3. A recent log line looks like an interactive prompt: ``waiting``.
    4. Last log line older than *idle_seconds*: ``idle``, else ``working``.

    *status* is a ``docker ps`` status string; when omitted the container is
    inspected instead.
    """
    matcher = matcher or PromptMatcher()
    try:
        if status is None:
            state = runtime.inspect(name)
            up, exit_code = state.running, state.exit_code
        else:
            summary = ContainerSummary(name=name, status=status)
            up, exit_code = summary.is_up, summary.exit_code
        if not up:
            return WorkerState.done if exit_code == 0 else WorkerState.failed

        if agent_process(runtime, name) is None:
            return WorkerState.done

        lines = list(runtime.logs(name, tail=tail, timestamps=True))
    except (ContainerRuntimeError, OSError, ValueError) as exc:
        logger.debug('Could not inspect %s, assuming idle: %s', name, exc)
        return WorkerState.idle

    parsed = [parse_log_line(line) for line in lines]
    if matcher.match(text for _, text in parsed):
        return WorkerState.waiting

    last_stamp = next((stamp for stamp, _ in reversed(parsed) if stamp is not None), None)
    if last_stamp is None:
        return WorkerState.idle
    now = now or datetime.now(UTC)
    if (now - last_stamp).total_seconds() > idle_seconds:
        return WorkerState.idle
    return WorkerState.working


# ---------------------------------------------------------------------------
# Fleet view
# ---------------------------------------------------------------------------


@dataclass
class WorkerRow:
    name: str
    status: str
    state: WorkerState

    @property
    def project(self) -> str:
        return split_container_name(self.name)[0]

    @property
    def task_id(self) -> str:
        return split_container_name(self.name)[1]

    @property
    def uptime(self) -> str:
        return ContainerSummary(name=self.name, status=self.status).uptime


def observe_workers(
    runtime: ContainerRuntime,
    prefix: str,
    *,
    matcher: PromptMatcher | None = None,
    now: datetime | None = None,
) -> list[WorkerRow]:
    """List and classify every worker whose name starts with *prefix*."""
    rows = []
    for summary in runtime.list_by_prefix(prefix):
        state = classify(runtime, summary.name, status=summary.status, matcher=matcher, now=now)
        rows.append(WorkerRow(name=summary.name, status=summary.status, state=state))
    return rows


def format_rows(rows: list[WorkerRow]) -> list[str]:
    lines = [
        f'{"CONTAINER":<40} {"STATUS":<12} {"UPTIME":<15} TASK',
        f'{"─" * 40} {"─" * 12} {"─" * 15} {"─" * 20}',
    ]
    for row in rows:
        state = f'{STATE_ICONS[row.state]} {row.state}'
        lines.append(f'{row.name:<40} {state:<12} {row.uptime:<15} {row.task_id}')
    return lines
