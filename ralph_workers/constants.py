"""Shared constants for ralph worker containers.

All values are configurable via environment variables for host-specific customization.
"""

from __future__ import annotations

import os


VERSION = '2.0.0'

CONTAINER_PREFIX = os.environ.get('RALPH_CONTAINER_PREFIX', 'ralph')
BASE_IMAGE = os.environ.get('RALPH_BASE_IMAGE', 'ralph-base')
BASE_DOCKERFILE = os.environ.get('RALPH_BASE_DOCKERFILE', 'docker/Dockerfile.base')
IMAGE_PREFIX = os.environ.get('RALPH_IMAGE_PREFIX', 'ralph')

DEFAULT_CPUS = os.environ.get('RALPH_CPUS', '2')
DEFAULT_MEMORY = os.environ.get('RALPH_MEMORY', '4g')

WATCH_INTERVAL = float(os.environ.get('RALPH_WATCH_INTERVAL', '5'))
IDLE_SECONDS = float(os.environ.get('RALPH_IDLE_SECONDS', '120'))
LOG_TAIL = int(os.environ.get('RALPH_LOG_TAIL', '20'))
MOUNT_DOCKER_SOCKET = os.environ.get('RALPH_MOUNT_DOCKER_SOCKET', '1').lower() not in ('0', 'false', 'no')

DOCKER_SOCKET = '/var/run/docker.sock'
CONTAINER_HOME = '/home/ralph'
CONTAINER_WORKSPACE = '/workspace'

CONFIG_DIR = '.ralph'
CONFIG_FILE = 'config.json'
BUILD_DIR = 'ralph'

# Process names (``ps -o comm=``) that mean an agent is still running.
AGENT_PROCESS_NAMES: tuple[str, ...] = ('opencode', 'claude', 'node')

# Substrings (or ``re:`` regexes) that mark an agent waiting for a human.
WAITING_PATTERNS: tuple[str, ...] = (
    '[Y/n]',
    '[y/N]',
    '(y/n)',
    '(Y/n)',
    'Do you want to',
    'Allow this',
    'Press Enter',
    'Waiting for input',
    'Waiting for approval',
    're:\\bapprove\\?',
    're:\\bcontinue\\?\\s*$',
)

# Docker label keys written on every worker.
LABEL_PROJECT = 'project'
LABEL_FOLDER = 'folder'
LABEL_TASK_KIND = 'ralph.task.kind'
LABEL_TASK_VALUE = 'ralph.task.value'
LABEL_TASK_ID = 'ralph.task.id'
