from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from inbox_recon.config import TENANT_OVERRIDES, Settings, resolve_policy, settings
from inbox_recon.errors import ConfigurationError, NotFound
from inbox_recon.models.models import Tenant
from inbox_recon.schemas.tenant import PolicyUpdate, TenantCreate


class TenantService:
    def __init__(self, db: Session, *, cfg: Settings | None = None) -> None:
        self.db = db
        self.cfg = cfg or settings

    def create_tenant(self, data: TenantCreate) -> Tenant:
        tenant = Tenant(name=data.name, base_currency=data.base_currency.upper() if data.base_currency else None)
        self.db.add(tenant)
        self.db.flush()
        return tenant

    def list_tenants(self) -> list[Tenant]:
        return list(self.db.scalars(select(Tenant).order_by(Tenant.id)))

    def get_tenant(self, tenant_id: int) -> Tenant:
        tenant = self.db.get(Tenant, tenant_id)
        if not tenant:
            raise NotFound(f"Tenant {tenant_id} not found")
        return tenant

    def get_policy(self, tenant_id: int) -> dict[str, Any]:
        tenant = self.get_tenant(tenant_id)
        policy = resolve_policy(self.cfg, tenant)
        return {
            "tenant_id": tenant.id,
            **policy.model_dump(),
            "overrides": {name: getattr(tenant, name) for name in TENANT_OVERRIDES},
        }

    def update_policy(self, tenant_id: int, data: PolicyUpdate) -> dict[str, Any]:
        tenant = self.get_tenant(tenant_id)
        previous = {name: getattr(tenant, name) for name in TENANT_OVERRIDES}
        for name in TENANT_OVERRIDES:
            setattr(tenant, name, getattr(data, name))
        try:
            resolve_policy(self.cfg, tenant)
        except ConfigurationError:
            for name, value in previous.items():
                setattr(tenant, name, value)
            raise
        self.db.flush()
        return self.get_policy(tenant_id)
