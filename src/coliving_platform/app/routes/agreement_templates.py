"""Agreement template management routes (operator only)."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from coliving_platform.app.http_errors import to_http_exception
from coliving_platform.app.routes.auth import require_operator
from coliving_platform.domain.errors import AgreementEngineError
from coliving_platform.domain.schemas import (
    TemplateCloneRequest,
    TemplateCreate,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
    TemplateResponse,
    TemplateUpdate,
)
from coliving_platform.infra.database import get_db
from coliving_platform.services.template_service import TemplateService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/agreements/templates",
    tags=["agreement-templates"],
    dependencies=[Depends(require_operator)],
)


@router.get("", response_model=list[TemplateResponse])
async def list_templates(
    property_id: Optional[str] = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
):
    return await TemplateService(db).list_for_property(property_id, active_only=not include_inactive)


@router.post("", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    data: TemplateCreate,
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    """Create a template. Placeholders and variable declarations must agree."""
    try:
        return await TemplateService(db).create(data, created_by=operator)
    except AgreementEngineError as e:
        raise to_http_exception(e)


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(template_id: str, db: AsyncSession = Depends(get_db)):
    try:
        return await TemplateService(db).get(template_id)
    except AgreementEngineError as e:
        raise to_http_exception(e)


@router.patch("/{template_id}", response_model=TemplateResponse)
async def update_template(template_id: str, data: TemplateUpdate, db: AsyncSession = Depends(get_db)):
    """Partial update. Changing content or variables bumps the template version."""
    try:
        return await TemplateService(db).update(template_id, data)
    except AgreementEngineError as e:
        raise to_http_exception(e)


@router.delete("/{template_id}", response_model=TemplateResponse)
async def deactivate_template(template_id: str, db: AsyncSession = Depends(get_db)):
    """Soft delete: agreements already rendered from the template are unaffected."""
    try:
        return await TemplateService(db).deactivate(template_id)
    except AgreementEngineError as e:
        raise to_http_exception(e)


@router.post("/{template_id}/clone", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def clone_template(
    template_id: str,
    data: TemplateCloneRequest,
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await TemplateService(db).clone(template_id, new_name=data.name, created_by=operator)
    except AgreementEngineError as e:
        raise to_http_exception(e)


@router.post("/{template_id}/preview", response_model=TemplatePreviewResponse)
async def preview_template(template_id: str, data: TemplatePreviewRequest, db: AsyncSession = Depends(get_db)):
    try:
        content, missing = await TemplateService(db).preview(template_id, data.values)
    except AgreementEngineError as e:
        raise to_http_exception(e)

    warnings = [f"No value supplied for {{{{{name}}}}}" for name in missing]
    return TemplatePreviewResponse(content=content, missing=missing, warnings=warnings)
