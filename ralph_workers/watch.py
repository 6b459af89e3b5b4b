"""Live fleet view that notifies once when a worker finishes.

Only transitions seen during this session are reported: a worker already
finished when watching begins is recorded silently.
"""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TextIO

from ralph_workers.constants import WATCH_INTERVAL
from ralph_workers.docker import ContainerRuntime
from ralph_workers.notify import Notification, Notifier
from ralph_workers.status import PromptMatcher, WorkerRow, WorkerState, format_rows, observe_workers


logger = logging.getLogger(__name__)

_ACTIVE = (WorkerState.working, WorkerState.waiting)
_TERMINAL = (WorkerState.done, WorkerState.failed)


@dataclass
class _Seen:
    working: bool = False
    notified: bool = False


class NotificationTracker:
    """Per-session memory of which workers were active and which were reported."""

    def __init__(self) -> None:
        self._seen: dict[str, _Seen] = {}

    def observe(self, row: WorkerRow, *, first_tick: bool = False) -> Notification | None:
        """Record one observation; return the notification to send, if any."""
        seen = self._seen.setdefault(row.name, _Seen())

        if row.state in _ACTIVE:
            seen.working = True
            return None
        if row.state not in _TERMINAL or seen.notified:
            return None
        if not seen.working:
            if first_tick:
                seen.notified = True
            return None

        seen.notified = True
        return Notification(
            name=row.name,
            project=row.project,
            task_id=row.task_id,
            state=row.state,
        )

    def notified(self, name: str) -> bool:
        seen = self._seen.get(name)
        return seen is not None and seen.notified


@contextmanager
def hidden_cursor(stream: TextIO = sys.stdout):
    """Hide the terminal cursor for the duration of the block."""
    tty = stream.isatty()
    if tty:
        stream.write('\033[?25l')
        stream.flush()
    try:
        yield
    finally:
        if tty:
            stream.write('\033[?25h')
            stream.flush()


def render_screen(rows: list[WorkerRow], stream: TextIO = sys.stdout) -> None:
    if stream.isatty():
        stream.write('\033[H\033[J')
    lines = [
        '',
        'Ralph Watch - Live container status (Ctrl+C to exit)',
        f'Updated: {datetime.now().strftime("%H:%M:%S")}',
        '',
        *format_rows(rows),
    ]
    if not rows:
        lines.append('  No Ralph containers running')
    lines.append('')
    stream.write('\n'.join(lines) + '\n')
    stream.flush()


def watch(
    runtime: ContainerRuntime,
    notifier: Notifier,
    *,
    prefix: str,
    interval: float = WATCH_INTERVAL,
    matcher: PromptMatcher | None = None,
    render: Callable[[list[WorkerRow]], None] | None = render_screen,
    max_ticks: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
    stream: TextIO = sys.stdout,
) -> NotificationTracker:
    """Poll every worker under *prefix* until interrupted (or *max_ticks* polls)."""
    tracker = NotificationTracker()
    tick = 0
    with hidden_cursor(stream):
        try:
            while max_ticks is None or tick < max_ticks:
                rows = observe_workers(runtime, prefix, matcher=matcher)
                for row in rows:
                    note = tracker.observe(row, first_tick=tick == 0)
                    if note is not None:
                        notifier.send(note)
                if render is not None:
                    render(rows)
                tick += 1
                if max_ticks is None or tick < max_ticks:
                    sleep(interval)
        except KeyboardInterrupt:
            logger.debug('watch interrupted after %d polls', tick)
    return tracker
