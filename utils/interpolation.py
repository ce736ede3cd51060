"""
Variable interpolation — replaces {{path.to.value}} placeholders with values
from the session context.

Placeholders that do not resolve are removed (replaced with ""), never left
literal, so template syntax never reaches the end user. Each removal logs a
`template_variable_missing` warning.
Anything else inside double braces that is not a valid path (`{{first name}}`,
`{{1st}}`) is stripped too and logs `template_placeholder_invalid`.
"""
from __future__ import annotations

import json
import re
from typing import Any

import structlog

logger = structlog.get_logger()

PLACEHOLDER = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
VALID_PATH = re.compile(r"[A-Za-z_][\w-]*(?:\.[\w-]+)*")

_MISSING = object()


def resolve_path(context: dict[str, Any], path: str) -> Any:
    """Walk the context key by key; returns _MISSING if any segment is absent."""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def interpolate(text: str, context: dict[str, Any]) -> str:
    """Substitute every {{placeholder}} in text. Never raises."""
    if not text:
        return text or ""

    def replacer(match: re.Match) -> str:
        path = match.group(1).strip()
        if not VALID_PATH.fullmatch(path):
            logger.warning("template_placeholder_invalid", placeholder=path)
            return ""
        try:
            value = resolve_path(context or {}, path)
        except Exception as e:
            logger.warning("template_resolution_failed", placeholder=path, error=str(e))
            return ""
        if value is _MISSING:
            logger.warning("template_variable_missing", placeholder=path)
            return ""
        return stringify(value)

    return PLACEHOLDER.sub(replacer, text)
