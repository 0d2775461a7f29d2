from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from inbox_recon.api.inbox import router as inbox_router
from inbox_recon.api.reconcile import router as reconcile_router
from inbox_recon.api.tenants import router as tenant_router
from inbox_recon.api.transactions import router as transaction_router
from inbox_recon.config import load_policy, settings
from inbox_recon.db.init_db import init_db
from inbox_recon.graphql.schema import graphql_router
from inbox_recon.log import configure_logging
from inbox_recon.services.jobs import JobScheduler, build_job_scheduler


def create_app(job_scheduler: JobScheduler | None = None) -> FastAPI:
    configure_logging(settings.log_level)
    load_policy(settings)
    init_db()

    jobs = job_scheduler or build_job_scheduler()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        jobs.start()
        try:
            yield
        finally:
            jobs.shutdown()

    app = FastAPI(title="Inbox Reconciliation API", lifespan=lifespan)
    app.state.job_scheduler = jobs

    app.include_router(tenant_router)
    app.include_router(inbox_router)
    app.include_router(transaction_router)
    app.include_router(reconcile_router)

    app.include_router(graphql_router, prefix="/graphql")
    return app


app = create_app()
