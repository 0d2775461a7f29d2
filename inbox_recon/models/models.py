from __future__ import annotations

import enum
from datetime import date, datetime, timezone

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inbox_recon.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentKind(str, enum.Enum):
    expense = "expense"
    invoice = "invoice"


class InboxStatus(str, enum.Enum):
    new = "new"
    analyzing = "analyzing"
    suggested_match = "suggested_match"
    done = "done"
    no_match = "no_match"
    pending = "pending"
    archived = "archived"
    deleted = "deleted"


class MatchType(str, enum.Enum):
    auto_matched = "auto_matched"
    high_confidence = "high_confidence"
    suggested = "suggested"


class SuggestionStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    declined = "declined"
    unmatched = "unmatched"


class ConfirmedBy(str, enum.Enum):
    system = "system"
    user = "user"


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    base_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    # Per-tenant policy overrides; null means "use the global setting".
    auto_match_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    suggestion_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_auto_margin: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    inbox_items: Mapped[list[InboxItem]] = relationship(back_populates="tenant", cascade="all, delete-orphan")  # type: ignore[name-defined]
    transactions: Mapped[list[Transaction]] = relationship(back_populates="tenant", cascade="all, delete-orphan")  # type: ignore[name-defined]


class InboxItem(Base):
    __tablename__ = "inbox_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    display_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    base_amount: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    base_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    document_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    kind: Mapped[DocumentKind] = mapped_column(Enum(DocumentKind), nullable=False, default=DocumentKind.expense, server_default=DocumentKind.expense.value)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)

    status: Mapped[InboxStatus] = mapped_column(Enum(InboxStatus), nullable=False, default=InboxStatus.new, server_default=InboxStatus.new.value)
    transaction_id: Mapped[int | None] = mapped_column(ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    tenant: Mapped[Tenant] = relationship(back_populates="inbox_items")

    __table_args__ = (
        Index("ix_inbox_tenant_status", "tenant_id", "status"),
        Index("ix_inbox_status_changed", "status", "status_changed_at"),
    )

    @property
    def effective_date(self) -> date:
        if self.document_date is not None:
            return self.document_date
        return self.created_at.date()


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD", server_default="USD")
    base_amount: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    base_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    posted_on: Mapped[date] = mapped_column(Date, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)

    # Back-reference to the inbox item holding the confirmed match. Only the
    # atomic claim in the state machine writes it.
    matched_inbox_id: Mapped[int | None] = mapped_column(
        ForeignKey("inbox_items.id", ondelete="SET NULL", use_alter=True), nullable=True, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    tenant: Mapped[Tenant] = relationship(back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_tx_tenant_external_id"),
        Index("ix_tx_tenant_posted", "tenant_id", "posted_on"),
    )


class MatchSuggestion(Base):
    __tablename__ = "match_suggestions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    inbox_id: Mapped[int] = mapped_column(ForeignKey("inbox_items.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True)

    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    similarity_score: Mapped[float] = mapped_column(Float, nullable=False)
    amount_score: Mapped[float] = mapped_column(Float, nullable=False)
    date_score: Mapped[float] = mapped_column(Float, nullable=False)
    embedding_distance: Mapped[float | None] = mapped_column(Float, nullable=True)
    missing_signals: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    match_type: Mapped[MatchType] = mapped_column(Enum(MatchType), nullable=False, default=MatchType.suggested)
    status: Mapped[SuggestionStatus] = mapped_column(Enum(SuggestionStatus), nullable=False, default=SuggestionStatus.pending, server_default=SuggestionStatus.pending.value)
    scored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    user_action_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("inbox_id", "transaction_id", name="uq_suggestion_inbox_tx"),
        Index("ix_suggestion_tenant_status", "tenant_id", "status"),
    )


class ConfirmedMatch(Base):
    __tablename__ = "confirmed_matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    inbox_id: Mapped[int] = mapped_column(ForeignKey("inbox_items.id", ondelete="CASCADE"), nullable=False, unique=True)
    transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, unique=True)
    confirmed_by: Mapped[ConfirmedBy] = mapped_column(Enum(ConfirmedBy), nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    confirmed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class MatchEvent(Base):
    __tablename__ = "match_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    inbox_id: Mapped[int] = mapped_column(ForeignKey("inbox_items.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id: Mapped[int | None] = mapped_column(ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True, index=True)

    action: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_status: Mapped[InboxStatus | None] = mapped_column(Enum(InboxStatus), nullable=True)
    new_status: Mapped[InboxStatus | None] = mapped_column(Enum(InboxStatus), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    actor: Mapped[str] = mapped_column(String(16), nullable=False, default=ConfirmedBy.system.value)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    response_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "key", name="uq_idemp_tenant_key"),
    )
