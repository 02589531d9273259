"""Tests for retention email rendering."""

import pytest

from churnpilot.models import EmailTemplate
from churnpilot.services.templates import build_variables, get_template_by_name, render_template_string


def test_render_placeholders():
    out = render_template_string("Hi {{ customer_id }}, risk {{ risk_level }}", {"customer_id": "c1", "risk_level": "high"})
    assert out == "Hi c1, risk high"


def test_unknown_placeholder_renders_empty():
    assert render_template_string("Hello {{ first_name }}!", {}) == "Hello !"


def test_values_are_escaped():
    assert render_template_string("{{ note }}", {"note": "<b>x</b>"}) == "&lt;b&gt;x&lt;/b&gt;"


def test_syntax_error_is_value_error():
    with pytest.raises(ValueError, match="Template syntax error"):
        render_template_string("{% if %}", {})


def test_campaign_data_overrides_record_fields():
    variables = build_variables({"churn_score": 0.734, "offer": "none"}, {"offer": "SAVE20"})
    assert variables["offer"] == "SAVE20"
    assert variables["churn_score_percent"] == 73


@pytest.mark.asyncio
async def test_get_template_by_name(db):
    db.add(EmailTemplate(name="win_back", subject="S", body="B"))
    await db.commit()
    assert (await get_template_by_name(db, "win_back")).subject == "S"
    assert await get_template_by_name(db, "missing") is None
