from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from inbox_recon.db.deps import get_db
from inbox_recon.errors import InvalidTransition, NotFound
from inbox_recon.schemas.inbox import InboxItemOut
from inbox_recon.schemas.match import BulkConfirmOut, CalibrationOut
from inbox_recon.services.workflow import ReconciliationWorkflow

router = APIRouter(prefix="/tenants/{tenant_id}/reconcile", tags=["reconciliation"])


@router.post("/bulk-confirm", response_model=BulkConfirmOut)
def bulk_confirm(tenant_id: int, db: Session = Depends(get_db)):
    try:
        return ReconciliationWorkflow(db).bulk_confirm_auto_eligible(tenant_id=tenant_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/discrepancies", response_model=list[InboxItemOut])
def discrepancies(
    tenant_id: int,
    include_reviewed: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    try:
        return ReconciliationWorkflow(db).discrepancy_queue(
            tenant_id=tenant_id, include_reviewed=include_reviewed, limit=limit, offset=offset
        )
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/discrepancies/{inbox_id}/review", response_model=InboxItemOut)
def mark_reviewed(tenant_id: int, inbox_id: int, db: Session = Depends(get_db)):
    try:
        return ReconciliationWorkflow(db).mark_reviewed(tenant_id=tenant_id, inbox_id=inbox_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/calibration", response_model=CalibrationOut)
def calibration(tenant_id: int, db: Session = Depends(get_db)):
    try:
        return ReconciliationWorkflow(db).calibration_report(tenant_id=tenant_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
