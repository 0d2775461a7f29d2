from __future__ import annotations

from datetime import date, datetime
from enum import Enum

import strawberry
from fastapi import Depends
from sqlalchemy.orm import Session
from strawberry.fastapi import BaseContext, GraphQLRouter
from strawberry.types import Info

from inbox_recon.db.deps import get_db
from inbox_recon.models.models import InboxItem, InboxStatus, MatchEvent, MatchSuggestion
from inbox_recon.services.inbox import InboxService
from inbox_recon.services.jobs import JobScheduler, get_job_scheduler
from inbox_recon.services.state_machine import MatchStateMachine
from inbox_recon.services.transactions import TransactionService
from inbox_recon.services.workflow import ReconciliationWorkflow


# ---------------------------
# GraphQL context (per request)
# ---------------------------

class Context(BaseContext):
    def __init__(self, db: Session, jobs: JobScheduler) -> None:
        super().__init__()
        self.db = db
        self.jobs = jobs


def get_context(db: Session = Depends(get_db), jobs: JobScheduler = Depends(get_job_scheduler)) -> Context:
    return Context(db=db, jobs=jobs)


# ---------------------------
# GraphQL Types
# ---------------------------

@strawberry.enum
class GInboxStatus(Enum):
    new = "new"
    analyzing = "analyzing"
    suggested_match = "suggested_match"
    done = "done"
    no_match = "no_match"
    pending = "pending"
    archived = "archived"
    deleted = "deleted"


@strawberry.type
class InboxItemType:
    id: int
    tenant_id: int
    display_name: str | None
    amount: float | None
    currency: str | None
    document_date: date | None
    kind: str
    status: GInboxStatus
    transaction_id: int | None
    created_at: datetime


@strawberry.type
class SuggestionType:
    id: int
    inbox_id: int
    transaction_id: int
    confidence: float
    similarity_score: float
    amount_score: float
    date_score: float
    missing_signals: list[str]
    match_type: str
    status: str


@strawberry.type
class MatchEventType:
    id: int
    inbox_id: int
    transaction_id: int | None
    action: str
    previous_status: str | None
    new_status: str | None
    confidence: float | None
    actor: str
    created_at: datetime


@strawberry.type
class BulkFailureType:
    id: int
    reason: str


@strawberry.type
class BulkConfirmType:
    confirmed: int
    failed: list[BulkFailureType]


def _item(i: InboxItem) -> InboxItemType:
    return InboxItemType(
        id=i.id,
        tenant_id=i.tenant_id,
        display_name=i.display_name,
        amount=float(i.amount) if i.amount is not None else None,
        currency=i.currency,
        document_date=i.document_date,
        kind=i.kind.value,
        status=GInboxStatus(InboxStatus(i.status).value),
        transaction_id=i.transaction_id,
        created_at=i.created_at,
    )


def _suggestion(s: MatchSuggestion) -> SuggestionType:
    return SuggestionType(
        id=s.id,
        inbox_id=s.inbox_id,
        transaction_id=s.transaction_id,
        confidence=s.confidence,
        similarity_score=s.similarity_score,
        amount_score=s.amount_score,
        date_score=s.date_score,
        missing_signals=list(s.missing_signals or []),
        match_type=s.match_type.value,
        status=s.status.value,
    )


def _event(e: MatchEvent) -> MatchEventType:
    return MatchEventType(
        id=e.id,
        inbox_id=e.inbox_id,
        transaction_id=e.transaction_id,
        action=e.action,
        previous_status=e.previous_status.value if e.previous_status else None,
        new_status=e.new_status.value if e.new_status else None,
        confidence=e.confidence,
        actor=e.actor,
        created_at=e.created_at,
    )


# ---------------------------
# Query
# ---------------------------

@strawberry.type
class Query:
    @strawberry.field
    def inbox_items(self, info: Info, tenant_id: int, status: GInboxStatus | None = None) -> list[InboxItemType]:
        db = info.context.db
        items = InboxService(db).list_items(
            tenant_id=tenant_id, status=InboxStatus(status.value) if status else None
        )
        return [_item(i) for i in items]

    @strawberry.field
    def suggestions(self, info: Info, tenant_id: int, inbox_id: int) -> list[SuggestionType]:
        db = info.context.db
        return [_suggestion(s) for s in InboxService(db).suggestions(tenant_id=tenant_id, inbox_id=inbox_id)]

    @strawberry.field
    def transaction_history(self, info: Info, tenant_id: int, transaction_id: int) -> list[MatchEventType]:
        db = info.context.db
        events = TransactionService(db).history(tenant_id=tenant_id, transaction_id=transaction_id)
        return [_event(e) for e in events]


# ---------------------------
# Mutation
# ---------------------------

@strawberry.type
class Mutation:
    @strawberry.field
    def confirm_match(self, info: Info, tenant_id: int, inbox_id: int, transaction_id: int) -> InboxItemType:
        db = info.context.db
        item = MatchStateMachine(db).confirm(tenant_id=tenant_id, inbox_id=inbox_id, transaction_id=transaction_id)
        return _item(item)

    @strawberry.field
    def decline_suggestion(self, info: Info, tenant_id: int, inbox_id: int, suggestion_id: int) -> InboxItemType:
        db = info.context.db
        item = MatchStateMachine(db).decline(tenant_id=tenant_id, inbox_id=inbox_id, suggestion_id=suggestion_id)
        return _item(item)

    @strawberry.field
    def unmatch(self, info: Info, tenant_id: int, inbox_id: int) -> InboxItemType:
        db = info.context.db
        return _item(MatchStateMachine(db).unmatch(tenant_id=tenant_id, inbox_id=inbox_id))

    @strawberry.field
    def retry_matching(self, info: Info, tenant_id: int, inbox_id: int) -> InboxItemType:
        db = info.context.db
        item = MatchStateMachine(db).retry_matching(tenant_id=tenant_id, inbox_id=inbox_id)
        db.commit()
        info.context.jobs.schedule_matching(item.id)
        db.refresh(item)
        return _item(item)

    @strawberry.field
    def bulk_confirm(self, info: Info, tenant_id: int) -> BulkConfirmType:
        db = info.context.db
        out = ReconciliationWorkflow(db).bulk_confirm_auto_eligible(tenant_id=tenant_id)
        return BulkConfirmType(
            confirmed=out["confirmed"],
            failed=[BulkFailureType(id=f["id"], reason=f["reason"]) for f in out["failed"]],
        )


schema = strawberry.Schema(query=Query, mutation=Mutation)
graphql_router = GraphQLRouter(schema, context_getter=get_context)
