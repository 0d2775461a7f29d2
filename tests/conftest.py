from __future__ import annotations

from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from inbox_recon.db.deps import get_db
from inbox_recon.db.init_db import init_db
from inbox_recon.db.session import make_session_factory
from inbox_recon.main import create_app
from inbox_recon.models.models import DocumentKind, InboxItem, InboxStatus, Tenant, Transaction
from inbox_recon.services.jobs import InlineJobScheduler, get_job_scheduler


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture()
def session_factory(engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def jobs(session_factory) -> InlineJobScheduler:
    return InlineJobScheduler(session_factory)


@pytest.fixture()
def client(session_factory, jobs) -> TestClient:
    app = create_app(job_scheduler=jobs)

    def override_get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_scheduler] = lambda: jobs
    return TestClient(app)


@pytest.fixture()
def tenant(db) -> Tenant:
    t = Tenant(name="Acme")
    db.add(t)
    db.commit()
    return t


@pytest.fixture()
def make_item(db, tenant):
    def _make(**kw) -> InboxItem:
        values = {
            "tenant_id": tenant.id,
            "display_name": "Coffee Roasters",
            "amount": 25.99,
            "currency": "USD",
            "document_date": date(2026, 3, 10),
            "kind": DocumentKind.expense,
            "status": InboxStatus.new,
        }
        values.update(kw)
        item = InboxItem(**values)
        db.add(item)
        db.commit()
        return item

    return _make


@pytest.fixture()
def make_tx(db, tenant):
    def _make(**kw) -> Transaction:
        values = {
            "tenant_id": tenant.id,
            "name": "COFFEE ROASTERS",
            "amount": -25.99,
            "currency": "USD",
            "posted_on": date(2026, 3, 10),
        }
        values.update(kw)
        tx = Transaction(**values)
        db.add(tx)
        db.commit()
        return tx

    return _make
