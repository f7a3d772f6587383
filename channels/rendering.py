"""
Template rendering — fills {{ tag }} placeholders from customer attributes.

Internal bookkeeping fields never reach a template; unknown tags render empty.
"""
from __future__ import annotations

import re
from typing import Any

from models.schemas import Customer, Template, TemplateType

INTERNAL_FIELDS = frozenset({
    "id", "workspace_id", "journeys", "workflows", "owner_id", "verified",
})

_TAG = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def clean_tags_for_sending(customer: Customer) -> dict[str, Any]:
    """Customer fields a template may reference."""
    tags = {
        "email": customer.email,
        "phone": customer.phone,
        **customer.attributes,
    }
    return {
        k: v for k, v in tags.items()
        if k not in INTERNAL_FIELDS and not k.startswith("_")
    }


def _lookup(tags: dict[str, Any], path: str) -> Any:
    current: Any = tags
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def render_tags(text: str, tags: dict[str, Any]) -> str:
    if not text:
        return ""

    def replace(match: re.Match) -> str:
        value = _lookup(tags, match.group(1))
        return "" if value is None else str(value)

    return _TAG.sub(replace, text)


def render_template(template: Template, tags: dict[str, Any]) -> dict[str, Any]:
    """Rendered content for the template's channel."""
    if template.type == TemplateType.EMAIL:
        return {
            "subject": render_tags(template.subject, tags),
            "text": render_tags(template.text, tags),
            "cc": list(template.cc),
        }
    if template.type == TemplateType.SMS:
        return {"text": render_tags(template.sms_text, tags)}
    if template.type == TemplateType.PUSH:
        return {
            "title": render_tags(template.push_title, tags),
            "text": render_tags(template.push_text, tags),
        }
    if template.type == TemplateType.SLACK:
        return {"text": render_tags(template.slack_message, tags)}
    # Webhooks are rendered at dispatch time
    return {
        "webhook": template.webhook_data.model_dump() if template.webhook_data else {},
        "tags": tags,
    }
