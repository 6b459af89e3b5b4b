"""Tests for notification delivery."""

from __future__ import annotations

import json
import logging
import subprocess
from unittest.mock import patch

import httpx
from conftest import FakeRuntime

from ralph_workers.constants import CONTAINER_PREFIX
from ralph_workers.models import NotificationSettings
from ralph_workers.notify import Notification, Notifier, notify_task
from ralph_workers.status import WorkerState


NAME = f'{CONTAINER_PREFIX}-myapp-issue-42'


class Recorder:
    """httpx transport handler that records requests."""

    def __init__(self, status_code: int = 200, error: Exception | None = None):
        self.requests: list[httpx.Request] = []
        self.status_code = status_code
        self.error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code)


def _notifier(recorder: Recorder, **settings) -> Notifier:
    settings.setdefault('desktop', False)
    client = httpx.Client(transport=httpx.MockTransport(recorder))
    return Notifier(NotificationSettings(**settings), client=client, platform='linux')


def _note(state: WorkerState, exit_code: int | None = None) -> Notification:
    return Notification(name=NAME, project='myapp', task_id='issue-42', state=state, exit_code=exit_code)


# ---------------------------------------------------------------------------
# Notification
# ---------------------------------------------------------------------------


class TestNotification:
    def test_done(self):
        note = _note(WorkerState.done)
        assert note.success
        assert note.title == 'Ralph: myapp complete'
        assert note.message == 'Task issue-42 finished successfully'

    def test_failed_with_exit_code(self):
        note = _note(WorkerState.failed, exit_code=2)
        assert not note.success
        assert note.title == 'Ralph: myapp failed'
        assert note.message == 'Task issue-42 exited with code 2'

    def test_waiting(self):
        assert _note(WorkerState.waiting).message == 'Task issue-42 is waiting for input'


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class TestWebhook:
    def test_payload(self):
        recorder = Recorder()
        with _notifier(recorder, webhook='https://hooks.example.com/ralph') as notifier:
            assert notifier.send(_note(WorkerState.failed, exit_code=1)) is True

        request = recorder.requests[0]
        assert request.method == 'POST'
        assert str(request.url) == 'https://hooks.example.com/ralph'
        assert json.loads(request.content) == {
            'status': 'failure',
            'title': 'Ralph: myapp failed',
            'message': 'Task issue-42 exited with code 1',
            'task': 'issue-42',
        }

    def test_http_error_is_logged_not_raised(self, caplog):
        recorder = Recorder(error=httpx.ConnectError('connection refused'))
        notifier = _notifier(recorder, webhook='https://hooks.example.com/ralph')
        with caplog.at_level(logging.WARNING, logger='ralph_workers.notify'):
            assert notifier.send(_note(WorkerState.done)) is False
        assert 'connection refused' in caplog.text

    def test_server_error_status(self, caplog):
        notifier = _notifier(Recorder(status_code=500), webhook='https://hooks.example.com/ralph')
        with caplog.at_level(logging.WARNING, logger='ralph_workers.notify'):
            assert notifier.send(_note(WorkerState.done)) is False
        assert 'HTTP 500' in caplog.text


class TestNtfy:
    def test_headers_and_body(self):
        recorder = Recorder()
        notifier = _notifier(recorder, ntfy='https://ntfy.sh/my-topic')
        notifier.send(_note(WorkerState.done))

        request = recorder.requests[0]
        assert request.content == b'Task issue-42 finished successfully'
        assert request.headers['Title'] == 'Ralph: myapp complete'
        assert request.headers['Priority'] == 'default'
        assert request.headers['Tags'] == 'white_check_mark,robot'

    def test_failure_priority(self):
        recorder = Recorder()
        _notifier(recorder, ntfy='https://ntfy.sh/my-topic').send(_note(WorkerState.failed))
        assert recorder.requests[0].headers['Priority'] == 'high'


class TestSettings:
    def test_on_success_false_mutes_done(self):
        recorder = Recorder()
        notifier = _notifier(recorder, webhook='https://hooks.example.com/ralph', onSuccess=False)
        assert notifier.send(_note(WorkerState.done)) is False
        assert notifier.send(_note(WorkerState.failed)) is True
        assert len(recorder.requests) == 1

    def test_on_failure_false_mutes_failed(self):
        recorder = Recorder()
        notifier = _notifier(recorder, ntfy='https://ntfy.sh/t', on_failure=False)
        assert notifier.send(_note(WorkerState.failed)) is False
        assert recorder.requests == []

    def test_nothing_configured(self):
        recorder = Recorder()
        assert _notifier(recorder).notify('title', 'message') is False


class TestDesktop:
    @patch('ralph_workers.notify.subprocess.run')
    @patch('ralph_workers.notify.shutil.which', return_value='/usr/bin/notify-send')
    def test_notify_send(self, _mock_which, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0, stdout='', stderr='')
        notifier = Notifier(platform='linux', client=httpx.Client(transport=httpx.MockTransport(Recorder())))

        assert notifier.notify('Ralph: myapp failed', 'boom', success=False) is True
        assert mock_run.call_args[0][0] == ['notify-send', '--urgency', 'critical', 'Ralph: myapp failed', 'boom']

    @patch('ralph_workers.notify.subprocess.run')
    def test_osascript_escapes_quotes(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0, stdout='', stderr='')
        notifier = Notifier(platform='darwin', client=httpx.Client(transport=httpx.MockTransport(Recorder())))

        notifier.notify('Ralph', 'said "hi"')

        cmd = mock_run.call_args[0][0]
        assert cmd[:2] == ['osascript', '-e']
        assert 'display notification "said \\"hi\\"" with title "Ralph" sound name "Glass"' == cmd[2]

    @patch('ralph_workers.notify.shutil.which', return_value=None)
    def test_no_desktop_tool(self, _mock_which):
        notifier = Notifier(platform='linux', client=httpx.Client(transport=httpx.MockTransport(Recorder())))
        assert notifier.notify('t', 'm') is False

    @patch('ralph_workers.notify.subprocess.run', side_effect=OSError('no display'))
    @patch('ralph_workers.notify.shutil.which', return_value='/usr/bin/notify-send')
    def test_desktop_failure_logged(self, _mock_which, _mock_run, caplog):
        notifier = Notifier(platform='linux', client=httpx.Client(transport=httpx.MockTransport(Recorder())))
        with caplog.at_level(logging.WARNING, logger='ralph_workers.notify'):
            assert notifier.notify('t', 'm') is False
        assert 'no display' in caplog.text


# ---------------------------------------------------------------------------
# notify_task
# ---------------------------------------------------------------------------


class TestNotifyTask:
    def test_reports_failed_worker(self, runtime: FakeRuntime):
        runtime.add(NAME, running=False, exit_code=3)
        recorder = Recorder()
        notifier = _notifier(recorder, webhook='https://hooks.example.com/ralph', onFailure=False)

        note = notify_task(notifier, runtime, NAME)

        assert note.state is WorkerState.failed
        assert note.exit_code == 3
        payload = json.loads(recorder.requests[0].content)
        assert payload['message'] == 'Task issue-42 exited with code 3'
        assert payload['status'] == 'failure'

    def test_running_worker_has_no_exit_code(self, runtime: FakeRuntime):
        runtime.add(NAME)
        note = notify_task(_notifier(Recorder()), runtime, NAME)
        assert note.exit_code is None
        assert note.message == 'Task issue-42 is still running...'
