from typing import Optional
from fastapi import APIRouter, Depends
from sqlmodel import Session
from ..auth import require_admin_access
from ..db import get_session
from ..schemas import RenderRequest, TemplateCreate, TemplateUpdate
from ..template_store import TemplateStore, template_to_dict

router = APIRouter()


@router.post("", status_code=201)
def create_template(data: TemplateCreate, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return template_to_dict(TemplateStore(session).create(data, created_by=ctx.role))


@router.get("")
def list_templates(
    include_inactive: bool = False,
    published: Optional[bool] = None,
    document_type: Optional[str] = None,
    event_type: Optional[str] = None,
    search: Optional[str] = None,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    rows = TemplateStore(session).list(
        include_inactive=include_inactive,
        published=published,
        document_type=document_type,
        event_type=event_type,
        search=search,
    )
    return [template_to_dict(t) for t in rows]


@router.get("/{template_id}")
def get_template(template_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return template_to_dict(TemplateStore(session).get(template_id))


@router.patch("/{template_id}")
def update_template(
    template_id: int,
    data: TemplateUpdate,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    return template_to_dict(TemplateStore(session).update(template_id, data))


@router.delete("/{template_id}")
def deactivate_template(template_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return template_to_dict(TemplateStore(session).deactivate(template_id))


@router.post("/{template_id}/publish")
def publish_template(template_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return template_to_dict(TemplateStore(session).publish(template_id))


@router.post("/{template_id}/unpublish")
def unpublish_template(template_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return template_to_dict(TemplateStore(session).unpublish(template_id))


@router.post("/{template_id}/versions", status_code=201)
def create_version(template_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return template_to_dict(TemplateStore(session).create_version(template_id, created_by=ctx.role))


@router.post("/{template_id}/render")
def render_template(
    template_id: int,
    payload: RenderRequest,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    return TemplateStore(session).preview(template_id, payload.variables)
