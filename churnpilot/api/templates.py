"""Retention email templates, addressed by name from send_email actions."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.database import get_db
from churnpilot.models import EmailTemplate
from churnpilot.schemas import TemplateCreate, TemplateOut
from churnpilot.services.templates import get_template_by_name, render_template_string

router = APIRouter(prefix="/templates", tags=["templates"])


@router.get("/", response_model=list[TemplateOut])
async def list_templates(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    category: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    stmt = select(EmailTemplate)
    if category:
        stmt = stmt.where(EmailTemplate.category == category)
    stmt = stmt.order_by(EmailTemplate.name).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/", response_model=TemplateOut, status_code=201)
async def create_template(data: TemplateCreate, db: AsyncSession = Depends(get_db)):
    if await get_template_by_name(db, data.name):
        raise HTTPException(409, "Template name already exists")
    # Reject broken Jinja2 up front instead of at dispatch time
    try:
        render_template_string(data.subject, {})
        render_template_string(data.body, {})
    except ValueError as e:
        raise HTTPException(400, str(e))
    tpl = EmailTemplate(**data.model_dump())
    db.add(tpl)
    await db.commit()
    await db.refresh(tpl)
    return tpl


@router.get("/{name}", response_model=TemplateOut)
async def get_template(name: str, db: AsyncSession = Depends(get_db)):
    tpl = await get_template_by_name(db, name)
    if not tpl:
        raise HTTPException(404, "Template not found")
    return tpl


@router.delete("/{name}", status_code=204)
async def delete_template(name: str, db: AsyncSession = Depends(get_db)):
    tpl = await get_template_by_name(db, name)
    if not tpl:
        raise HTTPException(404, "Template not found")
    await db.delete(tpl)
    await db.commit()
