"""
Template Renderer - {variable} substitution for WhatsApp message templates.

Unknown placeholders are left verbatim. A missing variable is a cosmetic
problem and must never block message delivery, so it is logged, not raised.
"""
import re
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def extract_variables(template: str) -> List[str]:
    """Placeholder names in order of first appearance."""
    seen: List[str] = []
    for name in PLACEHOLDER_PATTERN.findall(template or ""):
        if name not in seen:
            seen.append(name)
    return seen


def render(template: str, variables: Optional[Dict[str, Any]] = None) -> str:
    """Substitute {key} tokens with values from variables (None -> "")."""
    if not template:
        return ""
    values = variables or {}

    def _replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        return "" if value is None else str(value)

    rendered = PLACEHOLDER_PATTERN.sub(_replace, template)

    missing = [name for name in extract_variables(template) if name not in values]
    if missing:
        logger.warning(f"Template rendered with unresolved placeholders: {', '.join(missing)}")
    return rendered
