from __future__ import annotations

import shlex
import string
from typing import FrozenSet, List

from pydantic import BaseModel, ConfigDict, field_validator

from .utils import is_safe_extension, normalize_extension

# Placeholders a command template may reference
TEMPLATE_FIELDS = ("src_folder", "dst_folder", "name", "extension")

_SAMPLE_VALUES = {
    "src_folder": "/tmp/src",
    "dst_folder": "/tmp/dst",
    "name": "file-sample",
    "extension": "ext",
}


def render_command(template: str, src_folder: str, dst_folder: str, name: str, extension: str) -> str:
    """
    Render a command template with shell-quoted values.

    Raises:
        KeyError: Unknown placeholder
        IndexError: Positional placeholder such as ``{}``
        ValueError: Malformed template (unbalanced braces, bad format spec)
    """
    return template.format(
        src_folder=shlex.quote(src_folder),
        dst_folder=shlex.quote(dst_folder),
        name=shlex.quote(name),
        extension=shlex.quote(extension),
    )


class TaskDefinition(BaseModel):
    """A named, extension-scoped external command template."""

    model_config = ConfigDict(frozen=True)

    name: str
    extensions: FrozenSet[str]
    command: str = ""

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("task name must not be empty")
        return value

    @field_validator("extensions", mode="before")
    @classmethod
    def _normalize_extensions(cls, value: object) -> FrozenSet[str]:
        if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("extensions must be a list of strings")
        normalized = set()
        for item in value:
            ext = normalize_extension(str(item).strip())
            if not is_safe_extension(ext):
                raise ValueError(f"invalid extension {item!r}")
            normalized.add(ext)
        if not normalized:
            raise ValueError("extensions must not be empty")
        return frozenset(normalized)

    @field_validator("command", mode="before")
    @classmethod
    def _blank_command(cls, value: object) -> object:
        # a bare ``command:`` key in YAML loads as None
        return "" if value is None else value

    @field_validator("command")
    @classmethod
    def _check_command(cls, value: str) -> str:
        if not value.strip():
            return ""
        for _, field_name, _, _ in string.Formatter().parse(value):
            if field_name is not None and field_name not in TEMPLATE_FIELDS:
                raise ValueError(f"unknown placeholder {{{field_name}}}; available: {', '.join(TEMPLATE_FIELDS)}")
        render_command(value, **_SAMPLE_VALUES)
        return value

    @property
    def passthrough(self) -> bool:
        """An empty command accepts the file unchanged."""
        return not self.command

    def matches(self, extension: str) -> bool:
        return normalize_extension(extension) in self.extensions

    def render(self, src_folder: str, dst_folder: str, name: str, extension: str) -> str:
        return render_command(self.command, src_folder, dst_folder, name, extension)


class TaskConfig(BaseModel):
    tasks: List[TaskDefinition]

    @field_validator("tasks")
    @classmethod
    def _unique_names(cls, value: List[TaskDefinition]) -> List[TaskDefinition]:
        seen = set()
        for task in value:
            if task.name in seen:
                raise ValueError(f"duplicate task name {task.name!r}")
            seen.add(task.name)
        return value


class HealthStatus(BaseModel):
    status: str
    jobs: int
    active_tasks: int
