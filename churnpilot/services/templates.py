"""Retention email rendering — {{variable}} placeholders via Jinja2."""

from typing import Optional

from jinja2 import BaseLoader, Environment, TemplateSyntaxError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.models import EmailTemplate

_jinja_env = Environment(loader=BaseLoader(), autoescape=True)


def render_template_string(template_str: str, variables: dict) -> str:
    """Render a template string; unknown placeholders render empty."""
    try:
        tpl = _jinja_env.from_string(template_str or "")
        return tpl.render(**variables)
    except TemplateSyntaxError as e:
        raise ValueError(f"Template syntax error: {e}") from e


def build_variables(context: dict, campaign: Optional[dict] = None) -> dict:
    """Record fields first, static campaign data (action config) on top."""
    variables = dict(context)
    variables["churn_score_percent"] = round(float(context.get("churn_score", 0)) * 100)
    variables.update(campaign or {})
    return variables


async def get_template_by_name(db: AsyncSession, name: str) -> Optional[EmailTemplate]:
    result = await db.execute(select(EmailTemplate).where(EmailTemplate.name == name))
    return result.scalar_one_or_none()
