import logging
from datetime import date, datetime
from typing import List, Optional
from sqlmodel import Session, select
from .errors import InvalidState, NotFound, ValidationError
from .models import ContractTemplate
from .schemas import TemplateCreate, TemplateUpdate, VariableSection
from .templating import lookup, render
from .utils import EMAIL_RE, canonical_json, load_json, utcnow

logger = logging.getLogger(__name__)


def parse_schema(raw: str | None) -> List[VariableSection]:
    return [VariableSection.model_validate(s) for s in load_json(raw, [])]


def dump_schema(sections: List[VariableSection]) -> str:
    return canonical_json([s.model_dump(mode="json") for s in sections])


def _check_field_names(sections: List[VariableSection]):
    seen = set()
    for section in sections:
        for f in section.fields:
            if f.name in seen:
                raise ValidationError(f"duplicate variable '{f.name}' in schema")
            seen.add(f.name)


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip()) or value == []


def _check_value(f, value):
    label = f.label or f.name
    if f.type in ("number", "currency"):
        if isinstance(value, bool):
            raise ValidationError(f"{label} must be a number")
        try:
            num = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{label} must be a number")
        if f.min is not None and num < f.min:
            raise ValidationError(f"{label} must be at least {f.min:g}")
        if f.max is not None and num > f.max:
            raise ValidationError(f"{label} must be at most {f.max:g}")
    elif f.type == "email":
        if not isinstance(value, str) or not EMAIL_RE.match(value.strip()):
            raise ValidationError(f"{label} must be a valid email address")
    elif f.type == "date":
        if isinstance(value, (date, datetime)):
            return
        try:
            date.fromisoformat(str(value)[:10])
        except ValueError:
            raise ValidationError(f"{label} must be a date (YYYY-MM-DD)")
    elif f.type == "select":
        if str(value) not in f.options:
            raise ValidationError(f"{label} must be one of: {', '.join(f.options)}")
    elif f.type == "multiselect":
        values = value if isinstance(value, list) else [value]
        bad = [str(v) for v in values if str(v) not in f.options]
        if bad:
            raise ValidationError(f"{label} has options not allowed: {', '.join(bad)}")


def check_variables(sections: List[VariableSection], variables: dict) -> List[str]:
    """Returns warnings for missing required fields; raises ValidationError on ill-typed values."""
    warnings = []
    for section in sections:
        for f in section.fields:
            value = lookup(variables, f.name)
            if _blank(value):
                if f.required:
                    warnings.append(f"Missing required field: {f.label or f.name}")
                continue
            _check_value(f, value)
    return warnings


def apply_defaults(sections: List[VariableSection], variables: dict) -> dict:
    merged = dict(variables or {})
    for section in sections:
        for f in section.fields:
            if f.default is not None and _blank(lookup(merged, f.name)):
                merged[f.name] = f.default
    return merged


class TemplateStore:
    def __init__(self, session: Session):
        self.session = session

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(ContractTemplate).where(
            ContractTemplate.name == name, ContractTemplate.is_active == True  # noqa: E712
        )
        if exclude_id is not None:
            stmt = stmt.where(ContractTemplate.id != exclude_id)
        return self.session.exec(stmt).first() is not None

    def create(self, data: TemplateCreate, created_by: Optional[str] = None) -> ContractTemplate:
        name = data.name.strip()
        if self._name_taken(name):
            raise InvalidState(f"an active template named '{name}' already exists")
        _check_field_names(data.variables_schema)
        # surface unbalanced blocks now rather than at first render
        render(data.body_html, {})
        tpl = ContractTemplate(
            name=name,
            description=data.description,
            document_type=data.document_type,
            event_type=data.event_type,
            body_html=data.body_html,
            variables_schema_json=dump_schema(data.variables_schema),
            mandatory_clause_ids_json=canonical_json(data.mandatory_clause_ids),
            created_by=created_by,
        )
        self.session.add(tpl)
        self.session.commit()
        self.session.refresh(tpl)
        logger.info("template %s created (%s)", tpl.id, tpl.name)
        return tpl

    def get(self, template_id: int) -> ContractTemplate:
        tpl = self.session.get(ContractTemplate, template_id)
        if not tpl:
            raise NotFound(f"template {template_id} not found")
        return tpl

    def list(
        self,
        include_inactive: bool = False,
        published: Optional[bool] = None,
        document_type: Optional[str] = None,
        event_type: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[ContractTemplate]:
        stmt = select(ContractTemplate)
        if not include_inactive:
            stmt = stmt.where(ContractTemplate.is_active == True)  # noqa: E712
        if published is not None:
            stmt = stmt.where(ContractTemplate.is_published == published)
        if document_type:
            stmt = stmt.where(ContractTemplate.document_type == document_type)
        if event_type:
            stmt = stmt.where(ContractTemplate.event_type == event_type)
        if search:
            stmt = stmt.where(ContractTemplate.name.contains(search))
        return list(self.session.exec(stmt.order_by(ContractTemplate.name, ContractTemplate.version)).all())

    def update(self, template_id: int, data: TemplateUpdate) -> ContractTemplate:
        tpl = self.get(template_id)
        changes = data.model_dump(exclude_unset=True)
        if "body_html" in changes and tpl.is_published and changes["body_html"] != tpl.body_html:
            raise InvalidState("published template body cannot change; create a new version")
        if changes.get("name"):
            name = changes["name"].strip()
            if name != tpl.name and self._name_taken(name, exclude_id=tpl.id):
                raise InvalidState(f"an active template named '{name}' already exists")
            tpl.name = name
        if data.variables_schema is not None:
            _check_field_names(data.variables_schema)
            tpl.variables_schema_json = dump_schema(data.variables_schema)
        if data.mandatory_clause_ids is not None:
            tpl.mandatory_clause_ids_json = canonical_json(data.mandatory_clause_ids)
        if data.body_html is not None:
            render(data.body_html, {})
            tpl.body_html = data.body_html
        for key in ("description", "document_type", "event_type"):
            if key in changes:
                setattr(tpl, key, changes[key])
        tpl.updated_at = utcnow()
        self.session.add(tpl)
        self.session.commit()
        self.session.refresh(tpl)
        return tpl

    def _set_published(self, template_id: int, published: bool) -> ContractTemplate:
        tpl = self.get(template_id)
        if published and not tpl.is_active:
            raise InvalidState("inactive templates cannot be published")
        tpl.is_published = published
        tpl.updated_at = utcnow()
        self.session.add(tpl)
        self.session.commit()
        self.session.refresh(tpl)
        logger.info("template %s %s", tpl.id, "published" if published else "unpublished")
        return tpl

    def publish(self, template_id: int) -> ContractTemplate:
        return self._set_published(template_id, True)

    def unpublish(self, template_id: int) -> ContractTemplate:
        return self._set_published(template_id, False)

    def _lineage(self, tpl: ContractTemplate) -> List[ContractTemplate]:
        root = tpl
        while root.parent_id is not None:
            parent = self.session.get(ContractTemplate, root.parent_id)
            if parent is None:
                break
            root = parent
        family, frontier = [root], [root.id]
        while frontier:
            children = self.session.exec(
                select(ContractTemplate).where(ContractTemplate.parent_id.in_(frontier))
            ).all()
            family.extend(children)
            frontier = [c.id for c in children]
        return family

    def create_version(self, template_id: int, created_by: Optional[str] = None) -> ContractTemplate:
        """Clone as an unpublished draft numbered after the newest version in its lineage."""
        src = self.get(template_id)
        version = max(t.version for t in self._lineage(src)) + 1
        base = src.name.split(" (v")[0]
        name = f"{base} (v{version})"
        if self._name_taken(name):
            raise InvalidState(f"an active template named '{name}' already exists")
        clone = ContractTemplate(
            name=name,
            description=src.description,
            document_type=src.document_type,
            event_type=src.event_type,
            body_html=src.body_html,
            variables_schema_json=src.variables_schema_json,
            mandatory_clause_ids_json=src.mandatory_clause_ids_json,
            is_published=False,
            version=version,
            parent_id=src.id,
            created_by=created_by or src.created_by,
        )
        self.session.add(clone)
        self.session.commit()
        self.session.refresh(clone)
        logger.info("template %s versioned as %s (v%s)", src.id, clone.id, version)
        return clone

    def deactivate(self, template_id: int) -> ContractTemplate:
        tpl = self.get(template_id)
        tpl.is_active = False
        tpl.is_published = False
        tpl.updated_at = utcnow()
        self.session.add(tpl)
        self.session.commit()
        self.session.refresh(tpl)
        return tpl

    def render_body(self, template_id: int, variables: dict) -> str:
        tpl = self.get(template_id)
        return render(tpl.body_html, apply_defaults(parse_schema(tpl.variables_schema_json), variables))

    def preview(self, template_id: int, variables: dict) -> dict:
        tpl = self.get(template_id)
        sections = parse_schema(tpl.variables_schema_json)
        merged = apply_defaults(sections, variables)
        warnings = check_variables(sections, merged)
        return {"html": render(tpl.body_html, merged), "warnings": warnings}


def template_to_dict(tpl: ContractTemplate) -> dict:
    return {
        "id": tpl.id,
        "name": tpl.name,
        "description": tpl.description,
        "document_type": tpl.document_type,
        "event_type": tpl.event_type,
        "body_html": tpl.body_html,
        "variables_schema": load_json(tpl.variables_schema_json, []),
        "mandatory_clause_ids": load_json(tpl.mandatory_clause_ids_json, []),
        "is_active": tpl.is_active,
        "is_published": tpl.is_published,
        "version": tpl.version,
        "parent_id": tpl.parent_id,
        "created_at": tpl.created_at,
        "updated_at": tpl.updated_at,
    }
