"""Agreement templates: validation, versioning and {{variable}} rendering."""

import logging
import re
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coliving_platform.domain.enums import TemplateVariableType
from coliving_platform.domain.errors import (
    AgreementDataError,
    TemplateNotFoundError,
    TemplateValidationError,
)
from coliving_platform.domain.models import AgreementTemplate
from coliving_platform.domain.schemas import TemplateCreate, TemplateUpdate, TemplateVariable

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{([a-zA-Z_][a-zA-Z0-9_]*)\}\}")
VARIABLE_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

MIN_CONTENT_LENGTH = 50
RECOMMENDED_SECTIONS = ("tenant", "property", "rent")


def extract_placeholders(content: str) -> list[str]:
    """Unique placeholder names in order of first appearance."""
    seen: dict[str, None] = {}
    for match in PLACEHOLDER_RE.finditer(content):
        seen.setdefault(match.group(1), None)
    return list(seen)


def validate_template_definition(content: str, variables: list[TemplateVariable]) -> list[str]:
    """Validate template content against its declared variables.

    Returns non-fatal warnings. Raises TemplateValidationError on any hard error.
    """
    errors: list[str] = []
    names = [v.name for v in variables]

    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        errors.append(f"Duplicate variable names found: {', '.join(duplicates)}")

    invalid = [n for n in names if not VARIABLE_NAME_RE.match(n)]
    if invalid:
        errors.append(
            f"Invalid variable names (use alphanumeric and underscore only): {', '.join(invalid)}"
        )

    no_options = [v.name for v in variables if v.type == TemplateVariableType.SELECT and not v.select_options]
    if no_options:
        errors.append(f"Select variables must have options: {', '.join(no_options)}")

    undeclared = [n for n in extract_placeholders(content) if n not in names]
    if undeclared:
        errors.append(f"Template content references undefined variables: {', '.join(undeclared)}")

    if len(content) < MIN_CONTENT_LENGTH:
        errors.append("Template content is too short to be a valid agreement")

    if errors:
        raise TemplateValidationError(errors)

    lowered = content.lower()
    missing_sections = [s for s in RECOMMENDED_SECTIONS if s not in lowered]
    if missing_sections:
        return [f"Template may be missing important sections: {', '.join(missing_sections)}"]
    return []


def render_template(content: str, values: dict[str, Any]) -> str:
    """Substitute {{name}} placeholders; unknown placeholders are left as-is."""

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name in values and values[name] is not None:
            return str(values[name])
        return match.group(0)

    return PLACEHOLDER_RE.sub(_sub, content)


def _coerce(variable: TemplateVariable, value: Any) -> tuple[Any, Optional[str]]:
    """Check a supplied value against the variable type. Returns (value, error)."""
    if variable.type == TemplateVariableType.NUMBER:
        try:
            float(str(value).replace(",", "").replace("$", ""))
        except ValueError:
            return value, f"{variable.label} must be a number"
    elif variable.type == TemplateVariableType.DATE:
        try:
            datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return value, f"{variable.label} must be an ISO date"
    elif variable.type == TemplateVariableType.BOOLEAN:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered not in ("true", "false", "yes", "no"):
                return value, f"{variable.label} must be true or false"
            return "Yes" if lowered in ("true", "yes") else "No", None
        return "Yes" if value else "No", None
    elif variable.type == TemplateVariableType.SELECT:
        if str(value) not in (variable.select_options or []):
            return value, f"{variable.label} must be one of: {', '.join(variable.select_options or [])}"
    return value, None


def resolve_values(variables: list[TemplateVariable], supplied: dict[str, Any]) -> dict[str, Any]:
    """Apply defaults and check required/typed values for a template.

    Values for names the template does not declare are kept, so callers can
    carry extra onboarding data (e.g. emergency contact) on the agreement.
    """
    resolved = dict(supplied)
    errors: list[str] = []
    for variable in variables:
        value = supplied.get(variable.name)
        if value in (None, ""):
            if variable.default_value not in (None, ""):
                resolved[variable.name] = variable.default_value
            elif variable.required:
                errors.append(f"{variable.label} is required")
            continue
        coerced, error = _coerce(variable, value)
        if error:
            errors.append(error)
        else:
            resolved[variable.name] = coerced
    if errors:
        raise AgreementDataError(errors)
    return resolved


def template_variables(template: AgreementTemplate) -> list[TemplateVariable]:
    return [TemplateVariable.model_validate(v) for v in (template.variables or [])]


class TemplateService:
    """CRUD over agreement templates with validation and version tracking."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, template_id: str) -> AgreementTemplate:
        template = await self.db.get(AgreementTemplate, template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def list_for_property(
        self, property_id: Optional[str] = None, active_only: bool = True
    ) -> list[AgreementTemplate]:
        query = select(AgreementTemplate)
        if property_id:
            query = query.where(AgreementTemplate.property_id == property_id)
        if active_only:
            query = query.where(AgreementTemplate.is_active.is_(True))
        result = await self.db.execute(query.order_by(AgreementTemplate.name))
        return list(result.scalars().all())

    async def create(self, data: TemplateCreate, created_by: Optional[str] = None) -> AgreementTemplate:
        warnings = validate_template_definition(data.content, data.variables)
        for warning in warnings:
            logger.warning("Template %r: %s", data.name, warning)

        template = AgreementTemplate(
            property_id=data.property_id,
            name=data.name,
            description=data.description,
            category=data.category,
            content=data.content,
            variables=[v.model_dump(mode="json") for v in data.variables],
            is_active=True,
            version=1,
            created_by=created_by,
        )
        self.db.add(template)
        await self.db.commit()
        logger.info("Template %s created: %s", template.id, template.name)
        return template

    async def update(self, template_id: str, data: TemplateUpdate) -> AgreementTemplate:
        template = await self.get(template_id)

        content = data.content if data.content is not None else template.content
        variables = data.variables if data.variables is not None else template_variables(template)
        content_changed = data.content is not None and data.content != template.content
        new_variables = [v.model_dump(mode="json") for v in variables]
        variables_changed = data.variables is not None and new_variables != template.variables

        if content_changed or variables_changed:
            for warning in validate_template_definition(content, variables):
                logger.warning("Template %s: %s", template_id, warning)
            template.content = content
            template.variables = new_variables
            template.version = (template.version or 1) + 1

        if data.name is not None:
            template.name = data.name
        if data.description is not None:
            template.description = data.description
        if data.category is not None:
            template.category = data.category
        if data.is_active is not None:
            template.is_active = data.is_active

        await self.db.commit()
        return template

    async def deactivate(self, template_id: str) -> AgreementTemplate:
        template = await self.get(template_id)
        template.is_active = False
        await self.db.commit()
        logger.info("Template %s deactivated", template_id)
        return template

    async def clone(
        self, template_id: str, new_name: Optional[str] = None, created_by: Optional[str] = None
    ) -> AgreementTemplate:
        source = await self.get(template_id)
        clone = AgreementTemplate(
            property_id=source.property_id,
            name=new_name or f"{source.name} (Copy)",
            description=source.description,
            category=source.category,
            content=source.content,
            variables=list(source.variables or []),
            is_active=True,
            version=1,
            created_by=created_by,
        )
        self.db.add(clone)
        await self.db.commit()
        return clone

    async def preview(self, template_id: str, values: dict[str, Any]) -> tuple[str, list[str]]:
        """Render with defaults applied, returning the content and any unfilled placeholders."""
        template = await self.get(template_id)
        merged = dict(values)
        for variable in template_variables(template):
            if merged.get(variable.name) in (None, "") and variable.default_value not in (None, ""):
                merged[variable.name] = variable.default_value
        rendered = render_template(template.content, merged)
        return rendered, extract_placeholders(rendered)
