"""Pydantic models for ``.ralph/config.json`` validation and data access.

Only the keys the host CLI acts on are modelled. The rest of the file
(``prdFile``, ``commitMode``, ``git``, ``agent.model``) is read inside the
container from the mounted ``.ralph`` directory and ignored here.
"""

from __future__ import annotations

import re
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskMode(StrEnum):
    github = 'github'
    prd = 'prd'
    prompt = 'prompt'


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)


class RepoConfig(_ConfigModel):
    owner: str | None = None
    name: str | None = None
    url: str | None = None


class AgentConfig(_ConfigModel):
    cli: str = 'opencode'


class NotificationSettings(_ConfigModel):
    webhook: str | None = None
    ntfy: str | None = None
    on_success: bool = Field(default=True, alias='onSuccess')
    on_failure: bool = Field(default=True, alias='onFailure')
    desktop: bool = True


class ProjectConfig(_ConfigModel):
    repo: str | RepoConfig | None = None
    mode: TaskMode = TaskMode.github
    agent: AgentConfig = Field(default_factory=AgentConfig)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    waiting_patterns: list[str] = Field(default_factory=list, alias='waitingPatterns')

    @field_validator('agent', mode='before')
    @classmethod
    def agent_shorthand(cls, v: object) -> object:
        # "agent": "claude" is shorthand for {"cli": "claude"}
        if isinstance(v, str):
            return {'cli': v}
        return v

    @field_validator('mode', mode='before')
    @classmethod
    def mode_empty_is_github(cls, v: object) -> object:
        return v or TaskMode.github

    @field_validator('waiting_patterns')
    @classmethod
    def regex_patterns_compile(cls, v: list[str]) -> list[str]:
        for pattern in v:
            if pattern.startswith('re:'):
                try:
                    re.compile(pattern[3:])
                except re.error as exc:
                    raise ValueError(f'invalid regex in waitingPatterns {pattern!r}: {exc}') from exc
        return v

    @property
    def project_name(self) -> str:
        """Short lowercase project name used in image and container names."""
        name = None
        if isinstance(self.repo, str):
            name = normalize_repo(self.repo).split('/')[-1]
        elif isinstance(self.repo, RepoConfig):
            name = self.repo.name
        return (name or 'project').lower()


def normalize_repo(raw: str) -> str:
    """Reduce a GitHub URL or ``owner/name`` string to ``owner/name``."""
    value = re.sub(r'^https?://', '', raw.strip())
    value = re.sub(r'.*github\.com[:/]', '', value)
    value = re.sub(r'\.git$', '', value)
    return value.rstrip('/')


def parse_config(data: object) -> ProjectConfig:
    """Parse raw JSON data into a ProjectConfig.

    Raises ValidationError on invalid data.
    """
    return ProjectConfig.model_validate(data)
