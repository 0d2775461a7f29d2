from __future__ import annotations

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from inbox_recon.config import Settings, settings
from inbox_recon.errors import NotFound
from inbox_recon.models.models import InboxItem, InboxStatus, MatchEvent, MatchSuggestion, SuggestionStatus, Tenant
from inbox_recon.schemas.inbox import InboxItemCreate
from inbox_recon.services.currency import CurrencyConverter, base_amount_for, build_currency_converter
from inbox_recon.services.embeddings import EmbeddingProvider, build_embedding_provider, embed_or_none


class InboxService:
    def __init__(
        self,
        db: Session,
        *,
        cfg: Settings | None = None,
        embedder: EmbeddingProvider | None = None,
        converter: CurrencyConverter | None = None,
    ) -> None:
        self.db = db
        self.cfg = cfg or settings
        self.embedder = embedder or build_embedding_provider(self.cfg)
        self.converter = converter or build_currency_converter(self.cfg)

    def create_item(self, *, tenant_id: int, data: InboxItemCreate) -> InboxItem:
        tenant = self.db.get(Tenant, tenant_id)
        if not tenant:
            raise NotFound(f"Tenant {tenant_id} not found")

        item = InboxItem(
            tenant_id=tenant_id,
            display_name=data.display_name,
            description=data.description,
            amount=data.amount,
            currency=data.currency.upper() if data.currency else None,
            document_date=data.document_date,
            kind=data.kind,
            embedding=data.embedding or embed_or_none(self.embedder, data.display_name, data.description),
            status=InboxStatus.new,
        )
        item.base_amount, item.base_currency = base_amount_for(
            self.converter, data.amount, item.currency, data.document_date, tenant.base_currency
        )
        self.db.add(item)
        self.db.flush()
        return item

    def list_items(self, *, tenant_id: int, status: InboxStatus | None = None) -> list[InboxItem]:
        stmt = select(InboxItem).where(InboxItem.tenant_id == tenant_id)
        if status:
            stmt = stmt.where(InboxItem.status == status)
        return list(self.db.scalars(stmt.order_by(InboxItem.id)))

    def get_item(self, *, tenant_id: int, inbox_id: int) -> InboxItem:
        item = self.db.scalar(select(InboxItem).where(and_(InboxItem.tenant_id == tenant_id, InboxItem.id == inbox_id)))
        if not item:
            raise NotFound(f"Inbox item {inbox_id} not found")
        return item

    def suggestions(
        self, *, tenant_id: int, inbox_id: int, status: SuggestionStatus | None = None
    ) -> list[MatchSuggestion]:
        item = self.get_item(tenant_id=tenant_id, inbox_id=inbox_id)
        stmt = select(MatchSuggestion).where(MatchSuggestion.inbox_id == item.id)
        if status:
            stmt = stmt.where(MatchSuggestion.status == status)
        stmt = stmt.order_by(MatchSuggestion.confidence.desc(), MatchSuggestion.id)
        return list(self.db.scalars(stmt))

    def history(self, *, tenant_id: int, inbox_id: int) -> list[MatchEvent]:
        item = self.get_item(tenant_id=tenant_id, inbox_id=inbox_id)
        return list(self.db.scalars(select(MatchEvent).where(MatchEvent.inbox_id == item.id).order_by(MatchEvent.id)))
