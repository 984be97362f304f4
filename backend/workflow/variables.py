"""Context variable substitution for step configuration.

Step configuration strings may reference instance context values with
``{{name}}`` tokens, for example ``"Review {{task_title}}"``. A token is
replaced with ``str(context[name])`` when the key exists and is not None;
unknown tokens stay in the output verbatim so that authors can spot them.
"""

import re
from typing import Any

VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def replace_variables(template: Any, context: dict) -> Any:
    """Substitute ``{{name}}`` tokens in ``template`` from ``context``.

    Non-string values are returned unchanged. The function is pure: the
    same (template, context) pair always yields the same result.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    def _substitute(match: re.Match) -> str:
        value = context.get(match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return VARIABLE_PATTERN.sub(_substitute, template)


def resolve_config(value: Any, context: dict) -> Any:
    """Recursively apply :func:`replace_variables` to dicts and lists."""
    if isinstance(value, str):
        return replace_variables(value, context)
    if isinstance(value, dict):
        return {key: resolve_config(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_config(item, context) for item in value]
    return value
