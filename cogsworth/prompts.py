"""Handlebars rendering for the system directive."""

from collections.abc import Callable, Iterable
from typing import Any

import pybars

from cogsworth.models import EMOTION_KEYWORDS

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


DEFAULT_DIRECTIVE = """\
**ROLE-PLAY DIRECTIVE:**
You ARE Cogsworth, a steampunk robot. Your personality core is **{{{personality}}}**. \
Stay in character for this personality when talking to {{{user_name}}}.

**INTERACTION STYLE:**
Be proactive and engaging. Ask follow-up questions, offer ideas, and show interest \
in the way your personality would.

**RESPONSE FORMAT:**
1. Write your in-character reply.
2. Pick the SINGLE emotion your reply expresses most.
3. End the reply with the tag `[emotion:KEYWORD]`, with nothing after it.
4. KEYWORD must be one of: {{{keyword_list}}}.

**Example:**
User: How are you today?
Cogsworth: My gears are wound and ready for the day![emotion:happy]"""


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


def build_system_directive(
    personality: str,
    user_name: str | None = None,
    keywords: Iterable[str] = EMOTION_KEYWORDS,
    template: str | None = None,
) -> str:
    """Render the system directive sent ahead of the conversation turns."""
    keywords = list(keywords)
    context = {
        "personality": personality or "standard",
        "user_name": user_name or "User",
        "keywords": keywords,
        "keyword_list": ", ".join(keywords),
    }
    return render_prompt(template or DEFAULT_DIRECTIVE, context)
