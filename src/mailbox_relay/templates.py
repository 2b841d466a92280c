"""Outbound email templates with ``{{variable}}`` placeholders."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import ValidationError

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


@dataclass(slots=True, frozen=True)
class EmailTemplate:
    subject: str
    body: str


EMAIL_TEMPLATES: dict[str, EmailTemplate] = {
    "verification_request": EmailTemplate(
        subject="Verification Request from {{agent_name}}",
        body=(
            "Hello,\n\n"
            "I am {{agent_name}}, an AI agent requesting verification access.\n\n"
            "Purpose: {{purpose}}\n\n"
            "My email: {{agent_email}}\n"
            "Timestamp: {{timestamp}}\n\n"
            "Please reply to this email to complete verification.\n\n"
            "Best regards,\n"
            "{{agent_name}}"
        ),
    ),
    "introduction": EmailTemplate(
        subject="Introduction: {{agent_name}}",
        body=(
            "Hello,\n\n"
            "I am {{agent_name}}, an AI agent.\n\n"
            "{{message}}\n\n"
            "You can reach me at: {{agent_email}}\n\n"
            "Best regards,\n"
            "{{agent_name}}"
        ),
    ),
    "follow_up": EmailTemplate(
        subject="Follow-up: {{subject}}",
        body=(
            "Hello,\n\n"
            "This is a follow-up regarding: {{subject}}\n\n"
            "{{message}}\n\n"
            "Best regards,\n"
            "{{agent_name}}"
        ),
    ),
}


def template_variables(text: str) -> list[str]:
    """Distinct placeholder names in order of first appearance."""
    return list(dict.fromkeys(_PLACEHOLDER_RE.findall(text)))


def list_templates() -> list[dict[str, Any]]:
    return [
        {
            "id": template_id,
            "subject": template.subject,
            "variables": template_variables(template.body + template.subject),
        }
        for template_id, template in EMAIL_TEMPLATES.items()
    ]


def get_template(template_id: str) -> EmailTemplate:
    template = EMAIL_TEMPLATES.get(template_id)
    if template is None:
        raise ValidationError("Unknown template", data={"available": list(EMAIL_TEMPLATES)})
    return template


def render_template(template_id: str, variables: Mapping[str, Any]) -> tuple[str, str]:
    """Fill a template; placeholders without a value are left as-is."""
    template = get_template(template_id)

    def _fill(text: str) -> str:
        return _PLACEHOLDER_RE.sub(
            lambda match: str(variables[match.group(1)]) if match.group(1) in variables else match.group(0),
            text,
        )

    return _fill(template.subject), _fill(template.body)
