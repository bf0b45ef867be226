"""Prompt templates.

Every prompt the swarm sends (planner, worker tasks, review phases, tool
protocol) is a Jinja2 template shipped in ``coderide/templates``. Rendering
is strict: a missing variable is a bug, not an empty string.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, UndefinedError

from coderide.core.result import ConfigurationError

TEMPLATE_ROOT = Path(__file__).resolve().parent.parent / "templates"


@lru_cache(maxsize=4)
def prompt_environment(template_root: Path = TEMPLATE_ROOT) -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(template_root)),
        autoescape=False,
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["tojson"] = json.dumps
    return env


def render_template(
    name: str,
    context: Mapping[str, object],
    *,
    template_root: Path | None = None,
) -> str:
    """Render prompt template ``name`` with ``context``.

    Raises:
        ConfigurationError: The template is missing or references an
            undefined variable.
    """
    root = template_root or TEMPLATE_ROOT
    try:
        return prompt_environment(root).get_template(name).render(**context)
    except TemplateNotFound as exc:
        raise ConfigurationError(f"Prompt template not found: {name}", context={"root": str(root)}) from exc
    except UndefinedError as exc:
        raise ConfigurationError(f"Prompt template {name} is missing a value: {exc.message}") from exc


__all__ = ["TEMPLATE_ROOT", "prompt_environment", "render_template"]
