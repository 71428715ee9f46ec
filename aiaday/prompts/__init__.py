"""Handlebars prompt rendering.

Templates live next to this module as `<name>.hbs`. Use triple braces for
values that must not be HTML-escaped; prompts are plain text.
"""

from collections.abc import Callable
from importlib import resources
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def load_template(name: str) -> str:
    return resources.files("aiaday.prompts").joinpath(f"{name}.hbs").read_text()


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e
