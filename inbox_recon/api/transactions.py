from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from inbox_recon.db.deps import get_db
from inbox_recon.errors import NotFound
from inbox_recon.schemas.common import AmountRange, DateRange
from inbox_recon.schemas.match import MatchEventOut
from inbox_recon.schemas.transaction import TransactionFilters, TransactionIn, TransactionOut
from inbox_recon.services.jobs import JobScheduler, get_job_scheduler
from inbox_recon.services.transactions import IdempotencyConflict, TransactionService

router = APIRouter(prefix="/tenants/{tenant_id}/transactions", tags=["transactions"])


@router.post("/import", status_code=status.HTTP_200_OK)
def import_transactions(
    tenant_id: int,
    payload: list[TransactionIn],
    db: Session = Depends(get_db),
    jobs: JobScheduler = Depends(get_job_scheduler),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    if not idempotency_key:
        raise HTTPException(status_code=400, detail="Idempotency-Key header is required")
    try:
        result = TransactionService(db).import_transactions(
            tenant_id=tenant_id, transactions=payload, idempotency_key=idempotency_key
        )
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except IdempotencyConflict as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not result["replayed"]:
        db.commit()
        for tx_id in result["created_ids"]:
            jobs.schedule_transaction_matching(tenant_id, tx_id)
    return result


@router.get("", response_model=list[TransactionOut])
def list_transactions(
    tenant_id: int,
    db: Session = Depends(get_db),
    posted_start: date | None = Query(default=None),
    posted_end: date | None = Query(default=None),
    amount_min: float | None = Query(default=None, ge=0),
    amount_max: float | None = Query(default=None, ge=0),
    description_contains: str | None = Query(default=None),
    unmatched_only: bool = Query(default=False),
):
    filters = TransactionFilters(
        posted_on=DateRange(start=posted_start, end=posted_end) if (posted_start or posted_end) else None,
        amount=AmountRange(min=amount_min, max=amount_max) if (amount_min is not None or amount_max is not None) else None,
        description_contains=description_contains,
        unmatched_only=unmatched_only,
    )
    return TransactionService(db).list_transactions(tenant_id=tenant_id, filters=filters)


@router.get("/{transaction_id}/history", response_model=list[MatchEventOut])
def transaction_history(tenant_id: int, transaction_id: int, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).history(tenant_id=tenant_id, transaction_id=transaction_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
