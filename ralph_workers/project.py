"""Project discovery: locate ``.ralph/config.json`` and load it."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from ralph_workers.constants import BUILD_DIR, CONFIG_DIR, CONFIG_FILE, IMAGE_PREFIX
from ralph_workers.errors import ProjectConfigError, ProjectNotFound
from ralph_workers.models import ProjectConfig, parse_config


logger = logging.getLogger(__name__)

_DEFAULT_DOCKERFILE = """\
FROM ralph-base

ARG GITHUB_TOKEN
# Install project-specific toolchains here.

WORKDIR /workspace
"""

_DEFAULT_PROMPT = """\
# Project instructions

Describe coding conventions, test commands and anything else the agent
should know about this repository.
"""


@dataclass
class Project:
    root: Path
    config: ProjectConfig

    @property
    def name(self) -> str:
        return self.config.project_name

    @property
    def image(self) -> str:
        return f'{IMAGE_PREFIX}-{self.name}'

    @property
    def config_dir(self) -> Path:
        return self.root / CONFIG_DIR

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILE

    @property
    def build_dir(self) -> Path:
        return self.root / BUILD_DIR


def find_project_root(start: Path | None = None) -> Path | None:
    """Walk up from *start* to the first directory holding ``.ralph/config.json``."""
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        if (directory / CONFIG_DIR / CONFIG_FILE).is_file():
            return directory
    return None


def load_project(start: Path | None = None) -> Project:
    root = find_project_root(start)
    if root is None:
        raise ProjectNotFound(f'No config found ({CONFIG_DIR}/{CONFIG_FILE})')

    config_file = root / CONFIG_DIR / CONFIG_FILE
    try:
        data = json.loads(config_file.read_text(encoding='utf-8'))
        config = parse_config(data)
    except json.JSONDecodeError as exc:
        raise ProjectConfigError(f'Invalid {config_file}: {exc}') from exc
    except ValidationError as exc:
        problems = '; '.join(
            f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}" for error in exc.errors()
        )
        raise ProjectConfigError(f'Invalid {config_file}: {problems}') from exc
    return Project(root=root, config=config)


def try_load_project(start: Path | None = None) -> Project | None:
    """Like :func:`load_project`, but ``None`` when not inside a project."""
    try:
        return load_project(start)
    except ProjectNotFound:
        return None


def init_project(target: Path) -> list[Path]:
    """Create the ralph scaffolding in *target*, never overwriting files.

    Returns the files that were created.
    """
    config_dir = target / CONFIG_DIR
    build_dir = target / BUILD_DIR
    config_dir.mkdir(parents=True, exist_ok=True)
    build_dir.mkdir(parents=True, exist_ok=True)

    default_config = ProjectConfig().model_dump(mode='json', by_alias=True, exclude_none=True)
    default_config['repo'] = 'owner/name'

    files = {
        config_dir / CONFIG_FILE: json.dumps(default_config, indent=2) + '\n',
        build_dir / 'Dockerfile': _DEFAULT_DOCKERFILE,
        build_dir / 'prompt.md': _DEFAULT_PROMPT,
    }
    created = []
    for path, content in files.items():
        if path.exists():
            logger.warning('%s already exists, leaving it unchanged', path.relative_to(target))
            continue
        path.write_text(content, encoding='utf-8')
        created.append(path)
    return created
