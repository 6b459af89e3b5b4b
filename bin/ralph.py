#!/usr/bin/env python3
"""Ralph: run AI coding agents in parallel Docker containers.

One container (a *worker*) per task. Tasks are GitHub issues, PRD files, or
free-form prompts, and are referred to by their task id (``issue-42``) or,
for issues, by the bare number::

    ralph.py start 42          # issue 42 (github mode)
    ralph.py start 2 1 9       # issue 219, digits joined
    ralph.py logs -f issue-42
    ralph.py stop --all
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from ralph_workers import (
    VERSION,
    DockerCli,
    Notifier,
    RalphError,
    WorkerManager,
    classify,
    load_project,
    parse_task_args,
    try_load_project,
)
from ralph_workers.constants import BASE_DOCKERFILE, BASE_IMAGE, CONTAINER_WORKSPACE, WATCH_INTERVAL
from ralph_workers.docker import build_base_image, build_project_image
from ralph_workers.errors import DockerfileMissing, TaskSelectionError
from ralph_workers.lifecycle import attach_command
from ralph_workers.models import NotificationSettings
from ralph_workers.notify import notify_task
from ralph_workers.project import Project, init_project
from ralph_workers.status import PromptMatcher, format_rows, observe_workers
from ralph_workers.tasks import TaskRef, project_prefix
from ralph_workers.watch import watch


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _selector_tokens(args: argparse.Namespace) -> list[str]:
    """Rebuild the raw selector token list the resolver understands."""
    tokens = list(args.selector)
    for flag, values in (('--issue', args.issue), ('--prd', args.prd), ('--prompt', args.prompt)):
        for value in values or []:
            tokens.extend([flag, value])
    return tokens


def _require_task(args: argparse.Namespace, project: Project | None) -> TaskRef:
    mode = project.config.mode if project else 'github'
    task = parse_task_args(_selector_tokens(args), mode=mode)
    if task is None:
        raise TaskSelectionError(
            'Must specify a task ID',
            hint=f'Usage: ralph.py {args.command} <task-id> | ralph.py {args.command} 42',
        )
    return task


def _matcher(project: Project | None) -> PromptMatcher:
    matcher = PromptMatcher()
    if project and project.config.waiting_patterns:
        matcher = matcher.extend(project.config.waiting_patterns)
    return matcher


def _notifier(project: Project | None) -> Notifier:
    settings = project.config.notifications if project else NotificationSettings()
    return Notifier(settings)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_build_base(args: argparse.Namespace, runtime: DockerCli) -> None:
    source_dir = Path(args.context).resolve()
    if not (source_dir / args.file).is_file():
        raise DockerfileMissing(
            str(source_dir / args.file),
            hint='Run from the ralph checkout or pass --context.',
        )
    build_base_image(runtime, source_dir, dockerfile=args.file)
    logger.info('Base image built: %s', BASE_IMAGE)


def cmd_init(args: argparse.Namespace, runtime: DockerCli) -> None:
    target = Path(args.directory)
    created = init_project(target)
    for path in created:
        logger.info('Created %s', path)
    print('Ralph config initialized')
    print()
    print('Next steps:')
    print('  1. Edit .ralph/config.json with your project details')
    print('  2. Edit ralph/Dockerfile if needed')
    print('  3. Run: ralph.py build')
    print('  4. Run: ralph.py start --issue <number>')


def cmd_build(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = load_project()
    if not (project.build_dir / 'Dockerfile').is_file():
        raise DockerfileMissing(
            str(project.build_dir / 'Dockerfile'),
            hint="Run 'ralph init' to scaffold one, or add it by hand.",
        )

    if not runtime.image_exists(BASE_IMAGE):
        logger.warning("Base image %s not found; run 'ralph.py build-base' if the build fails", BASE_IMAGE)

    token = os.environ.get('GITHUB_TOKEN')
    if not token:
        logger.warning('No GITHUB_TOKEN set. Build may fail for private repos.')

    logger.info('Building image for project: %s', project.name)
    build_project_image(runtime, project.image, project.build_dir, token)
    logger.info('Image built: %s', project.image)


def cmd_start(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = load_project()
    task = parse_task_args(_selector_tokens(args), mode=project.config.mode, for_start=True)
    handle = WorkerManager(runtime).start(project, task)

    print(f'Container started: {handle.name}')
    print()
    print(f'View logs:     ralph.py logs {task.task_id}')
    print(f'Follow logs:   ralph.py logs -f {task.task_id}')
    print(f'Stop:          ralph.py stop {task.task_id}')


def cmd_restart(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = try_load_project()
    task = _require_task(args, project)
    manager = WorkerManager(runtime)
    name = manager.find(task.task_id, project)
    handle = manager.restart(name, fallback_project=project)
    print(f'Container restarted: {handle.name}')


def cmd_stop(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = try_load_project()
    manager = WorkerManager(runtime)

    if args.all:
        scope = f' for project: {project.name}' if project else ''
        logger.info('Stopping all Ralph containers%s', scope)
        stopped = manager.stop_all(project.name if project else None)
        if stopped:
            print(f'Containers stopped and removed: {", ".join(stopped)}')
        else:
            print('No running containers found')
        return

    task = _require_task(args, project)
    name = manager.find(task.task_id, project)
    logger.info('Stopping container: %s', name)
    manager.stop(name)
    print(f'Container stopped and removed: {name}')


def cmd_list(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = try_load_project()
    rows = observe_workers(runtime, project_prefix(), matcher=_matcher(project))
    print()
    for line in format_rows(rows):
        print(line)
    print()


def cmd_status(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = try_load_project()
    task = _require_task(args, project)
    name = WorkerManager(runtime).find(task.task_id, project)
    state = runtime.inspect(name)
    observed = classify(runtime, name, matcher=_matcher(project))

    print()
    print(f'Container: {name}')
    print('─' * 41)
    print(f'Status:    {state.status}')
    print(f'State:     {observed}')
    print(f'Started:   {state.started_at or "-"}')
    print(f'Finished:  {state.finished_at or "-"}')
    print(f'Exit Code: {state.exit_code}')

    if state.running:
        for title, command, fallback in (
            ('Git Status', ['git', '-C', CONTAINER_WORKSPACE, 'status', '--short'], '(unable to get git status)'),
            ('Current Branch', ['git', '-C', CONTAINER_WORKSPACE, 'branch', '--show-current'], '(unable to get branch)'),
            ('Recent Commits', ['git', '-C', CONTAINER_WORKSPACE, 'log', '--oneline', '-3'], '(no commits yet)'),
        ):
            print()
            print(f'{title}:')
            result = runtime.exec(name, command)
            print(result.stdout.rstrip() if result.ok else f'  {fallback}')
    print()


def cmd_logs(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = try_load_project()
    task = _require_task(args, project)
    name = WorkerManager(runtime).find(task.task_id, project)
    for line in runtime.logs(name, follow=args.follow):
        print(line, flush=args.follow)


def cmd_attach(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = try_load_project()
    task = _require_task(args, project)
    manager = WorkerManager(runtime)
    name = manager.find(task.task_id, project)
    manager.require_running(name)

    folder = manager.handle(name).folder
    worker_project = try_load_project(folder) if folder else project
    agent = worker_project.config.agent.cli if worker_project else 'opencode'

    logger.info('Attaching to agent in: %s', name)
    cmd = runtime.exec_argv(name, attach_command(agent), interactive=True, workdir=CONTAINER_WORKSPACE)
    os.execvp(cmd[0], cmd)


def cmd_shell(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = try_load_project()
    task = _require_task(args, project)
    manager = WorkerManager(runtime)
    name = manager.find(task.task_id, project)
    manager.require_running(name)

    logger.info('Opening shell in: %s', name)
    cmd = runtime.exec_argv(name, ['/bin/bash'], interactive=True)
    os.execvp(cmd[0], cmd)


def cmd_watch(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = try_load_project()
    with _notifier(project) as notifier:
        watch(
            runtime,
            notifier,
            prefix=project_prefix(),
            interval=args.interval,
            matcher=_matcher(project),
        )


def cmd_notify(args: argparse.Namespace, runtime: DockerCli) -> None:
    project = try_load_project()
    task = parse_task_args(_selector_tokens(args), mode=project.config.mode if project else 'github')

    with _notifier(project) as notifier:
        if task is None:
            notifier.notify('Ralph Test', 'Notifications are working!')
            print('Test notification sent')
            return

        name = WorkerManager(runtime).find(task.task_id, project)
        note = notify_task(notifier, runtime, name, matcher=_matcher(project))
        print(f'Notification sent: {note.title}')


def cmd_clean(args: argparse.Namespace, runtime: DockerCli) -> None:
    logger.info('Cleaning up stopped Ralph containers...')
    removed = WorkerManager(runtime).clean()
    if removed:
        print(f'Removed stopped containers: {", ".join(removed)}')
    else:
        print('No stopped containers to remove')

    logger.info('Removing dangling images...')
    runtime.prune_images()
    print('Cleanup complete')


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _add_selector(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        'selector',
        nargs='*',
        help='Task id (issue-42), bare issue number, or "issue N" / "prd FILE" / "prompt TEXT"',
    )
    parser.add_argument('--issue', '--task', action='append', help='GitHub issue number')
    parser.add_argument('--prd', action='append', help='PRD file')
    parser.add_argument('--prompt', action='append', help='Custom prompt text')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ralph.py',
        description='Ralph - Parallel AI Agent CLI',
    )
    parser.add_argument('--version', action='version', version=f'ralph {VERSION}')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    sub = parser.add_subparsers(dest='command', metavar='<command>')

    p = sub.add_parser('build-base', help=f'Build the {BASE_IMAGE} Docker image')
    p.add_argument('--context', default='.', help='Build context (default: current directory)')
    p.add_argument('-f', '--file', default=BASE_DOCKERFILE, help=f'Dockerfile (default: {BASE_DOCKERFILE})')
    p.set_defaults(func=cmd_build_base)

    p = sub.add_parser('init', help='Initialize ralph config in a project')
    p.add_argument('directory', nargs='?', default='.', help='Project directory (default: .)')
    p.set_defaults(func=cmd_init)

    p = sub.add_parser('build', help='Build project-specific image (run from project dir)')
    p.set_defaults(func=cmd_build)

    p = sub.add_parser('start', help='Start a new agent container')
    _add_selector(p)
    p.set_defaults(func=cmd_start)

    p = sub.add_parser('restart', help='Stop a container and start its task again')
    _add_selector(p)
    p.set_defaults(func=cmd_restart)

    p = sub.add_parser('stop', help='Stop container(s)')
    _add_selector(p)
    p.add_argument('-a', '--all', action='store_true', help='Stop every running container (of this project)')
    p.set_defaults(func=cmd_stop)

    p = sub.add_parser('list', aliases=['ls'], help='List all Ralph containers')
    p.set_defaults(func=cmd_list)

    p = sub.add_parser('status', help='Show detailed status of a container')
    _add_selector(p)
    p.set_defaults(func=cmd_status)

    p = sub.add_parser('logs', help='View container logs')
    _add_selector(p)
    p.add_argument('-f', '--follow', action='store_true', help='Follow log output')
    p.set_defaults(func=cmd_logs)

    p = sub.add_parser('attach', help='Connect to agent for follow-up instructions')
    _add_selector(p)
    p.set_defaults(func=cmd_attach)

    p = sub.add_parser('shell', aliases=['sh'], help='Open interactive shell in container')
    _add_selector(p)
    p.set_defaults(func=cmd_shell)

    p = sub.add_parser('watch', help='Watch containers and notify on completion')
    p.add_argument(
        '--interval',
        type=float,
        default=WATCH_INTERVAL,
        help=f'Seconds between polls (default: {WATCH_INTERVAL})',
    )
    p.set_defaults(func=cmd_watch)

    p = sub.add_parser('notify', help='Send a test notification (or report a task)')
    _add_selector(p)
    p.set_defaults(func=cmd_notify)

    p = sub.add_parser('clean', help='Remove all stopped containers')
    p.set_defaults(func=cmd_clean)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        stream=sys.stderr,
    )

    runtime = DockerCli()
    try:
        args.func(args, runtime)
    except RalphError as exc:
        hint = f' {exc.hint}' if exc.hint else ''
        print(f'Error: {exc}{hint}', file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == '__main__':
    main()
