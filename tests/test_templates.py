from __future__ import annotations

import pytest

from mailbox_relay.errors import ValidationError
from mailbox_relay.templates import EMAIL_TEMPLATES, list_templates, render_template, template_variables


def test_three_builtin_templates():
    assert set(EMAIL_TEMPLATES) == {"verification_request", "introduction", "follow_up"}


def test_list_templates_reports_variables():
    listing = {entry["id"]: entry for entry in list_templates()}
    assert listing["verification_request"]["variables"] == ["agent_name", "purpose", "agent_email", "timestamp"]
    assert listing["follow_up"]["subject"] == "Follow-up: {{subject}}"


def test_template_variables_are_distinct_and_ordered():
    assert template_variables("{{b}} {{a}} {{b}}") == ["b", "a"]


def test_render_fills_subject_and_body():
    subject, body = render_template(
        "introduction",
        {"agent_name": "Scout", "agent_email": "kai+1@relay.test", "message": "Nice to meet you."},
    )
    assert subject == "Introduction: Scout"
    assert "Nice to meet you." in body
    assert body.endswith("Scout")


def test_render_leaves_missing_placeholders():
    subject, body = render_template("follow_up", {"agent_name": "Scout"})
    assert subject == "Follow-up: {{subject}}"
    assert "{{message}}" in body


def test_unknown_template_lists_available():
    with pytest.raises(ValidationError) as excinfo:
        render_template("nope", {})
    assert sorted(excinfo.value.data["available"]) == sorted(EMAIL_TEMPLATES)
