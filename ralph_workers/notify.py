"""Fire-and-forget notifications: desktop, generic webhook, and ntfy.

Delivery problems are logged and swallowed; a notification must never take
down the command that sent it.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass

import httpx

from ralph_workers.docker import ContainerRuntime
from ralph_workers.models import NotificationSettings
from ralph_workers.status import PromptMatcher, WorkerState, classify
from ralph_workers.tasks import split_container_name


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass
class Notification:
    name: str
    project: str
    task_id: str
    state: WorkerState
    exit_code: int | None = None

    @property
    def success(self) -> bool:
        return self.state is not WorkerState.failed

    @property
    def title(self) -> str:
        if self.state is WorkerState.done:
            return f'Ralph: {self.project} complete'
        if self.state is WorkerState.failed:
            return f'Ralph: {self.project} failed'
        return f'Ralph: {self.project}'

    @property
    def message(self) -> str:
        if self.state is WorkerState.done:
            return f'Task {self.task_id} finished successfully'
        if self.state is WorkerState.failed:
            if self.exit_code is not None:
                return f'Task {self.task_id} exited with code {self.exit_code}'
            return f'Task {self.task_id} exited with error'
        if self.state is WorkerState.waiting:
            return f'Task {self.task_id} is waiting for input'
        return f'Task {self.task_id} is still running...'


class Notifier:
    """Send notifications through every configured channel."""

    def __init__(
        self,
        settings: NotificationSettings | None = None,
        *,
        client: httpx.Client | None = None,
        platform: str = sys.platform,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.settings = settings or NotificationSettings()
        self.platform = platform
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=5.0))

    def send(self, note: Notification) -> bool:
        """Deliver *note* unless the settings mute its outcome."""
        if note.state is WorkerState.done and not self.settings.on_success:
            return False
        if note.state is WorkerState.failed and not self.settings.on_failure:
            return False
        logger.info('%s: %s', note.title, note.message)
        return self.notify(note.title, note.message, success=note.success, task_id=note.task_id)

    def notify(self, title: str, message: str, *, success: bool = True, task_id: str = '') -> bool:
        """Fan out to all channels; ``True`` if at least one accepted the message."""
        sent = False
        if self.settings.desktop and self._desktop(title, message, success):
            sent = True
        if self.settings.webhook and self._webhook(self.settings.webhook, title, message, success, task_id):
            sent = True
        if self.settings.ntfy and self._ntfy(self.settings.ntfy, title, message, success):
            sent = True
        return sent

    # -- channels ----------------------------------------------------------

    def _desktop(self, title: str, message: str, success: bool) -> bool:
        if self.platform == 'darwin':
            sound = 'Glass' if success else 'Basso'
            script = (
                f'display notification {_applescript_str(message)} '
                f'with title {_applescript_str(title)} sound name "{sound}"'
            )
            cmd = ['osascript', '-e', script]
        elif shutil.which('notify-send'):
            cmd = ['notify-send', '--urgency', 'normal' if success else 'critical', title, message]
        else:
            return False

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=10)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning('Desktop notification failed: %s', exc)
            return False
        if result.returncode != 0:
            logger.warning('Desktop notification failed: %s', result.stderr.strip())
            return False
        return True

    def _webhook(self, url: str, title: str, message: str, success: bool, task_id: str) -> bool:
        payload = {
            'status': 'success' if success else 'failure',
            'title': title,
            'message': message,
            'task': task_id,
        }
        return self._post(url, json=payload)

    def _ntfy(self, url: str, title: str, message: str, success: bool) -> bool:
        headers = {
            'Title': title,
            'Priority': 'default' if success else 'high',
            'Tags': 'white_check_mark,robot' if success else 'x,robot',
        }
        return self._post(url, content=message.encode('utf-8'), headers=headers)

    def _post(self, url: str, **kwargs) -> bool:
        try:
            response = self._client.post(url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning('Notification to %s failed: %s', url, exc)
            return False
        if not response.is_success:
            logger.warning('Notification to %s failed: HTTP %s', url, response.status_code)
            return False
        return True

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> Notifier:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def notify_task(
    notifier: Notifier,
    runtime: ContainerRuntime,
    name: str,
    *,
    matcher: PromptMatcher | None = None,
) -> Notification:
    """Report the current state of one worker, regardless of mute settings."""
    state = runtime.inspect(name)
    observed = classify(runtime, name, matcher=matcher)
    project, task_id = split_container_name(name)
    note = Notification(
        name=name,
        project=project,
        task_id=task_id,
        state=observed,
        exit_code=None if state.running else state.exit_code,
    )
    notifier.notify(note.title, note.message, success=note.success, task_id=task_id)
    return note


def _applescript_str(text: str) -> str:
    escaped = text.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'
