from __future__ import annotations

import json
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from inbox_recon.config import Settings, settings
from inbox_recon.errors import NotFound, ReconciliationError
from inbox_recon.models.models import IdempotencyRecord, MatchEvent, Tenant, Transaction
from inbox_recon.schemas.transaction import TransactionFilters, TransactionIn
from inbox_recon.services.currency import CurrencyConverter, base_amount_for, build_currency_converter
from inbox_recon.services.embeddings import EmbeddingProvider, build_embedding_provider, embed_or_none
from inbox_recon.utils.hashing import payload_fingerprint, stable_json_dumps


class IdempotencyConflict(ReconciliationError):
    pass


class TransactionService:
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

    def list_transactions(self, *, tenant_id: int, filters: TransactionFilters | None = None) -> list[Transaction]:
        stmt = select(Transaction).where(Transaction.tenant_id == tenant_id)
        if filters:
            if filters.posted_on:
                if filters.posted_on.start:
                    stmt = stmt.where(Transaction.posted_on >= filters.posted_on.start)
                if filters.posted_on.end:
                    stmt = stmt.where(Transaction.posted_on <= filters.posted_on.end)
            if filters.amount:
                if filters.amount.min is not None:
                    stmt = stmt.where(func.abs(Transaction.amount) >= filters.amount.min)
                if filters.amount.max is not None:
                    stmt = stmt.where(func.abs(Transaction.amount) <= filters.amount.max)
            if filters.description_contains:
                like = f"%{filters.description_contains.lower()}%"
                stmt = stmt.where(Transaction.description.ilike(like))
            if filters.unmatched_only:
                stmt = stmt.where(Transaction.matched_inbox_id.is_(None))
        stmt = stmt.order_by(Transaction.id)
        return list(self.db.scalars(stmt))

    def history(self, *, tenant_id: int, transaction_id: int) -> list[MatchEvent]:
        tx = self.db.scalar(
            select(Transaction).where(and_(Transaction.tenant_id == tenant_id, Transaction.id == transaction_id))
        )
        if not tx:
            raise NotFound(f"Transaction {transaction_id} not found")
        stmt = select(MatchEvent).where(MatchEvent.transaction_id == tx.id).order_by(MatchEvent.id)
        return list(self.db.scalars(stmt))

    def import_transactions(
        self,
        *,
        tenant_id: int,
        transactions: list[TransactionIn],
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Insert a batch once per idempotency key.

        A replay with the same payload returns the first response with
        ``replayed`` set; a different payload under the same key conflicts.
        """
        if not idempotency_key:
            raise ValueError("idempotency_key is required")
        tenant = self.db.get(Tenant, tenant_id)
        if not tenant:
            raise NotFound(f"Tenant {tenant_id} not found")

        payload_obj = [t.model_dump(mode="json") for t in transactions]
        req_hash = payload_fingerprint(payload_obj)

        existing = self.db.scalar(
            select(IdempotencyRecord).where(and_(IdempotencyRecord.tenant_id == tenant_id, IdempotencyRecord.key == idempotency_key))
        )
        if existing:
            if existing.request_hash != req_hash:
                raise IdempotencyConflict("Idempotency key reused with different payload")
            return {**json.loads(existing.response_json), "replayed": True}

        created_ids: list[int] = []
        inserted = 0
        skipped = 0

        for t in transactions:
            currency = t.currency.upper()
            base_amount, base_currency = base_amount_for(
                self.converter, t.amount, currency, t.posted_on, tenant.base_currency
            )
            values = {
                "tenant_id": tenant_id,
                "external_id": t.external_id,
                "name": t.name,
                "description": t.description,
                "posted_on": t.posted_on,
                "amount": t.amount,
                "currency": currency,
                "base_amount": base_amount,
                "base_currency": base_currency,
                "embedding": t.embedding or embed_or_none(self.embedder, t.name, t.description),
            }

            stmt = sqlite_insert(Transaction).values(**values)
            if t.external_id:
                stmt = stmt.on_conflict_do_nothing(index_elements=["tenant_id", "external_id"])

            res = self.db.execute(stmt)
            # sqlite: rowcount 0 means the external id already existed
            if res.rowcount == 1:
                inserted += 1
                if res.lastrowid is not None:
                    created_ids.append(int(res.lastrowid))
            else:
                skipped += 1

        response = {"inserted": inserted, "skipped": skipped, "created_ids": created_ids}
        record = IdempotencyRecord(tenant_id=tenant_id, key=idempotency_key, request_hash=req_hash, response_json=stable_json_dumps(response))
        self.db.add(record)
        self.db.flush()
        return {**response, "replayed": False}
