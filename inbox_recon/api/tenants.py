from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inbox_recon.db.deps import get_db
from inbox_recon.errors import ConfigurationError, NotFound
from inbox_recon.schemas.tenant import PolicyOut, PolicyUpdate, TenantCreate, TenantOut
from inbox_recon.services.tenants import TenantService

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.post("", response_model=TenantOut, status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreate, db: Session = Depends(get_db)):
    svc = TenantService(db)
    try:
        tenant = svc.create_tenant(payload)
        return tenant
    except IntegrityError:
        raise HTTPException(status_code=409, detail=f"Tenant '{payload.name}' already exists")


@router.get("", response_model=list[TenantOut])
def list_tenants(db: Session = Depends(get_db)):
    return TenantService(db).list_tenants()


@router.get("/{tenant_id}/policy", response_model=PolicyOut)
def get_policy(tenant_id: int, db: Session = Depends(get_db)):
    try:
        return TenantService(db).get_policy(tenant_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/{tenant_id}/policy", response_model=PolicyOut)
def update_policy(tenant_id: int, payload: PolicyUpdate, db: Session = Depends(get_db)):
    try:
        return TenantService(db).update_policy(tenant_id, payload)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
