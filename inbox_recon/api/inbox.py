from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from inbox_recon.db.deps import get_db
from inbox_recon.errors import InvalidTransition, MatchConflict, NotFound
from inbox_recon.models.models import InboxStatus, SuggestionStatus
from inbox_recon.schemas.inbox import ConfirmRequest, InboxItemCreate, InboxItemOut
from inbox_recon.schemas.match import ExplanationOut, MatchEventOut, SuggestionOut
from inbox_recon.services.explain import ExplanationService
from inbox_recon.services.inbox import InboxService
from inbox_recon.services.jobs import JobScheduler, get_job_scheduler
from inbox_recon.services.state_machine import MatchStateMachine

router = APIRouter(prefix="/tenants/{tenant_id}/inbox", tags=["inbox"])


@router.post("", response_model=InboxItemOut, status_code=status.HTTP_201_CREATED)
def ingest(
    tenant_id: int,
    payload: InboxItemCreate,
    db: Session = Depends(get_db),
    jobs: JobScheduler = Depends(get_job_scheduler),
):
    try:
        item = InboxService(db).create_item(tenant_id=tenant_id, data=payload)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    # the job reads the item from its own session
    db.commit()
    jobs.schedule_matching(item.id)
    db.refresh(item)
    return item


@router.get("", response_model=list[InboxItemOut])
def list_items(tenant_id: int, status: InboxStatus | None = Query(default=None), db: Session = Depends(get_db)):
    return InboxService(db).list_items(tenant_id=tenant_id, status=status)


@router.get("/{inbox_id}", response_model=InboxItemOut)
def get_item(tenant_id: int, inbox_id: int, db: Session = Depends(get_db)):
    try:
        return InboxService(db).get_item(tenant_id=tenant_id, inbox_id=inbox_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{inbox_id}/suggestions", response_model=list[SuggestionOut])
def list_suggestions(
    tenant_id: int,
    inbox_id: int,
    status: SuggestionStatus | None = Query(default=None),
    db: Session = Depends(get_db),
):
    try:
        return InboxService(db).suggestions(tenant_id=tenant_id, inbox_id=inbox_id, status=status)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{inbox_id}/suggestions/{suggestion_id}/explain", response_model=ExplanationOut)
def explain_suggestion(tenant_id: int, inbox_id: int, suggestion_id: int, db: Session = Depends(get_db)):
    try:
        return ExplanationService(db).explain(tenant_id=tenant_id, inbox_id=inbox_id, suggestion_id=suggestion_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{inbox_id}/history", response_model=list[MatchEventOut])
def item_history(tenant_id: int, inbox_id: int, db: Session = Depends(get_db)):
    try:
        return InboxService(db).history(tenant_id=tenant_id, inbox_id=inbox_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{inbox_id}/confirm", response_model=InboxItemOut)
def confirm(tenant_id: int, inbox_id: int, payload: ConfirmRequest, db: Session = Depends(get_db)):
    try:
        return MatchStateMachine(db).confirm(tenant_id=tenant_id, inbox_id=inbox_id, transaction_id=payload.transaction_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidTransition, MatchConflict) as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{inbox_id}/suggestions/{suggestion_id}/decline", response_model=InboxItemOut)
def decline(tenant_id: int, inbox_id: int, suggestion_id: int, db: Session = Depends(get_db)):
    try:
        return MatchStateMachine(db).decline(tenant_id=tenant_id, inbox_id=inbox_id, suggestion_id=suggestion_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{inbox_id}/unmatch", response_model=InboxItemOut)
def unmatch(tenant_id: int, inbox_id: int, db: Session = Depends(get_db)):
    try:
        return MatchStateMachine(db).unmatch(tenant_id=tenant_id, inbox_id=inbox_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{inbox_id}/retry", response_model=InboxItemOut)
def retry(
    tenant_id: int,
    inbox_id: int,
    db: Session = Depends(get_db),
    jobs: JobScheduler = Depends(get_job_scheduler),
):
    try:
        item = MatchStateMachine(db).retry_matching(tenant_id=tenant_id, inbox_id=inbox_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    db.commit()
    jobs.schedule_matching(item.id)
    db.refresh(item)
    return item


@router.post("/{inbox_id}/archive", response_model=InboxItemOut)
def archive(tenant_id: int, inbox_id: int, db: Session = Depends(get_db)):
    try:
        return MatchStateMachine(db).archive(tenant_id=tenant_id, inbox_id=inbox_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.delete("/{inbox_id}", response_model=InboxItemOut)
def delete_item(tenant_id: int, inbox_id: int, db: Session = Depends(get_db)):
    try:
        return MatchStateMachine(db).delete(tenant_id=tenant_id, inbox_id=inbox_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
