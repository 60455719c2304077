"""
Prompt loader for versioned, domain-organized YAML templates.

    v1/
    ├── shared/       # JSON-only instruction, language rules
    ├── bible/        # story bible generation
    ├── chapter/      # chapter generation and pacing
    ├── moderation/   # child-tier content gate
    └── media/        # narration, illustration and video direction

Usage:
    from taletree.prompts.loader import get_prompt, render_prompt, get_prompt_data

    rendered = render_prompt("prompt_chapter_user", chapter_number=2, ...)
    suffixes = get_prompt_data("image_audience_suffix")
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment, StrictUndefined

logger = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent
_VERSION = "v1"

_DOMAIN_DIRS = [
    "shared",
    "bible",
    "chapter",
    "moderation",
    "media",
]

# injected into every render unless the caller overrides them
_SHARED_KEYS = ("system_prompt_json", "language_rules")


@lru_cache(maxsize=1)
def _jinja_env() -> Environment:
    return Environment(
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )


@lru_cache(maxsize=1)
def _load_prompts() -> dict[str, Any]:
    """Load every prompt file of the current version into one mapping."""
    prompts: dict[str, Any] = {}
    version_dir = _PROMPTS_DIR / _VERSION

    for domain in _DOMAIN_DIRS:
        domain_dir = version_dir / domain
        if not domain_dir.exists():
            continue

        for yaml_file in sorted(domain_dir.glob("*.yaml")):
            with yaml_file.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            if not isinstance(data, dict):
                raise ValueError(f"{yaml_file} must be a mapping at top level")

            # fail fast on template syntax errors
            for key, value in data.items():
                if isinstance(value, str):
                    try:
                        _jinja_env().parse(value)
                    except Exception as e:
                        raise ValueError(f"Invalid Jinja2 template in {yaml_file}:{key}: {e}") from e

            duplicated = set(prompts).intersection(data)
            if duplicated:
                logger.warning("prompt keys redefined in %s: %s", yaml_file.name, sorted(duplicated))
            prompts.update(data)

    return prompts


def get_prompt(name: str) -> str:
    """
    Get a prompt template by name.

    Raises:
        KeyError: If prompt not found or not a string
    """
    value = _load_prompts().get(name)
    if isinstance(value, str):
        return value
    raise KeyError(f"Prompt '{name}' not found or not a string")


def get_prompt_data(name: str) -> Any:
    """Get non-template prompt data such as lookup tables."""
    prompts = _load_prompts()
    if name not in prompts:
        raise KeyError(f"Prompt data '{name}' not found")
    return prompts[name]


def render_prompt(name: str, **context: Any) -> str:
    """
    Render a prompt template with the given context.

    Raises:
        KeyError: If the prompt does not exist
        jinja2.UndefinedError: If the template references a variable not in context
    """
    prompts = _load_prompts()
    for shared_key in _SHARED_KEYS:
        if shared_key not in context and shared_key in prompts:
            context[shared_key] = prompts[shared_key]

    template = get_prompt(name)
    return _jinja_env().from_string(template).render(**context).strip()


def clear_cache() -> None:
    """Clear all cached prompts (useful for hot-reload scenarios)."""
    _load_prompts.cache_clear()
    _jinja_env.cache_clear()
