"""Mail templates with ``{{variable}}`` placeholders."""

from __future__ import annotations

import html
import re
from typing import Any, Dict, Mapping, Optional

from .persistence import Persistence

_PLACEHOLDER = re.compile(r"{{\s*([A-Za-z0-9_.-]+)\s*}}")


class TemplateNotFoundError(LookupError):
    """Raised when a queued message references a template that does not exist."""

    def __init__(self, template_id: str):
        super().__init__(f"Email template '{template_id}' not found")
        self.template_id = template_id
        self.code = "template_not_found"


def render_template(text: str, data: Optional[Mapping[str, Any]], *, escape: bool = False) -> str:
    """Substitute ``{{ key }}`` placeholders with values from ``data``.

    Placeholders without a matching key are left as they are so a broken
    template is visible in the delivered mail rather than silently blanked.
    With ``escape`` the substituted values are HTML-escaped, for HTML bodies.
    """
    if not text or not data:
        return text or ""

    def _replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in data:
            return match.group(0)
        value = data[key]
        if value is None:
            return ""
        return html.escape(str(value)) if escape else str(value)

    return _PLACEHOLDER.sub(_replace, text)


class TemplateResolver:
    """Look up stored templates by id."""

    def __init__(self, persistence: Persistence):
        self.persistence = persistence

    async def get_template(self, template_id: str) -> Dict[str, str]:
        """Return ``{"subject", "body"}`` or raise :class:`TemplateNotFoundError`."""
        template = await self.persistence.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return {"subject": template["subject"], "body": template["body"]}

    async def render(self, template_id: str, data: Optional[Mapping[str, Any]]) -> Dict[str, str]:
        template = await self.get_template(template_id)
        return {
            "subject": render_template(template["subject"], data),
            "body": render_template(template["body"], data, escape=True),
        }
