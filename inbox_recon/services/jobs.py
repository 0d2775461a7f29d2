from __future__ import annotations

import logging
from datetime import timedelta

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import Request
from sqlalchemy.orm import Session, sessionmaker

from inbox_recon.config import Settings, settings
from inbox_recon.db.session import SessionLocal, session_scope
from inbox_recon.errors import InvalidTransition, NotFound
from inbox_recon.models.models import ConfirmedBy, InboxItem, InboxStatus, utcnow
from inbox_recon.services.matching import MatchingService
from inbox_recon.services.state_machine import MatchStateMachine

logger = logging.getLogger(__name__)


def _process(inbox_id: int, session_factory: sessionmaker[Session], cfg: Settings) -> None:
    try:
        with session_scope(session_factory) as db:
            item = db.get(InboxItem, inbox_id)
            if item is None or item.status != InboxStatus.analyzing:
                return
            MatchingService(db, cfg=cfg).process(item)
    except InvalidTransition as e:
        logger.warning("Inbox item %s changed while matching: %s", inbox_id, e)
    except Exception:
        logger.exception("Matching failed for inbox item %s", inbox_id)
        _park(inbox_id, session_factory)


def _park(inbox_id: int, session_factory: sessionmaker[Session]) -> None:
    try:
        with session_scope(session_factory) as db:
            item = db.get(InboxItem, inbox_id)
            if item is not None and item.status == InboxStatus.analyzing:
                MatchStateMachine(db).defer(item, note="matching failed")
    except InvalidTransition:
        pass


def run_matching(inbox_id: int, *, session_factory: sessionmaker[Session] | None = None, cfg: Settings | None = None) -> None:
    """Move a new item into analyzing (own commit), then score and decide it."""
    factory = session_factory or SessionLocal
    cfg = cfg or settings
    try:
        with session_scope(factory) as db:
            item = db.get(InboxItem, inbox_id)
            if item is None:
                logger.warning("Inbox item %s vanished before matching", inbox_id)
                return
            if item.status == InboxStatus.new:
                MatchStateMachine(db).ingest(item)
            elif item.status != InboxStatus.analyzing:
                logger.info("Inbox item %s is %s; nothing to match", inbox_id, InboxStatus(item.status).value)
                return
    except InvalidTransition as e:
        logger.info("Skipping inbox item %s: %s", inbox_id, e)
        return
    _process(inbox_id, factory, cfg)


def run_transaction_matching(
    tenant_id: int,
    transaction_id: int,
    *,
    session_factory: sessionmaker[Session] | None = None,
    cfg: Settings | None = None,
) -> int:
    """Retry waiting items that a newly arrived transaction may satisfy."""
    factory = session_factory or SessionLocal
    cfg = cfg or settings
    try:
        with session_scope(factory) as db:
            ids = MatchingService(db, cfg=cfg).items_awaiting_transaction(tenant_id=tenant_id, transaction_id=transaction_id)
    except NotFound:
        logger.warning("Transaction %s vanished before reverse matching", transaction_id)
        return 0

    retried = 0
    for inbox_id in ids:
        try:
            with session_scope(factory) as db:
                MatchStateMachine(db).retry_matching(tenant_id=tenant_id, inbox_id=inbox_id, actor=ConfirmedBy.system)
        except InvalidTransition:
            continue
        _process(inbox_id, factory, cfg)
        retried += 1
    if retried:
        logger.info("Transaction %s: re-ran matching for %d waiting item(s)", transaction_id, retried)
    return retried


def sweep_stale_items(*, session_factory: sessionmaker[Session] | None = None, cfg: Settings | None = None) -> list[int]:
    cfg = cfg or settings
    cutoff = utcnow() - timedelta(seconds=cfg.analyzing_timeout_seconds)
    with session_scope(session_factory or SessionLocal) as db:
        return MatchStateMachine(db).expire_stale(older_than=cutoff)


class JobScheduler:
    def __init__(self, session_factory: sessionmaker[Session] | None = None, cfg: Settings | None = None) -> None:
        self.session_factory = session_factory or SessionLocal
        self.cfg = cfg or settings

    def start(self) -> None:
        pass

    def shutdown(self) -> None:
        pass

    def schedule_matching(self, inbox_id: int) -> None:
        raise NotImplementedError

    def schedule_transaction_matching(self, tenant_id: int, transaction_id: int) -> None:
        raise NotImplementedError


class InlineJobScheduler(JobScheduler):
    """Runs each job immediately on the caller's thread."""

    def schedule_matching(self, inbox_id: int) -> None:
        run_matching(inbox_id, session_factory=self.session_factory, cfg=self.cfg)

    def schedule_transaction_matching(self, tenant_id: int, transaction_id: int) -> None:
        run_transaction_matching(tenant_id, transaction_id, session_factory=self.session_factory, cfg=self.cfg)


class BackgroundJobScheduler(JobScheduler):
    def __init__(self, session_factory: sessionmaker[Session] | None = None, cfg: Settings | None = None) -> None:
        super().__init__(session_factory, cfg)
        self.scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(8)},
            job_defaults={"coalesce": True, "misfire_grace_time": 60},
            timezone="UTC",
        )

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            sweep_stale_items,
            IntervalTrigger(seconds=self.cfg.sweep_interval_seconds),
            kwargs={"session_factory": self.session_factory, "cfg": self.cfg},
            id="sweep_stale_items",
            name="Move stuck analyzing items to pending",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info("Background scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Background scheduler stopped")

    def schedule_matching(self, inbox_id: int) -> None:
        self.scheduler.add_job(
            run_matching,
            args=[inbox_id],
            kwargs={"session_factory": self.session_factory, "cfg": self.cfg},
            id=f"match-inbox-{inbox_id}",
            replace_existing=True,
        )

    def schedule_transaction_matching(self, tenant_id: int, transaction_id: int) -> None:
        self.scheduler.add_job(
            run_transaction_matching,
            args=[tenant_id, transaction_id],
            kwargs={"session_factory": self.session_factory, "cfg": self.cfg},
            id=f"match-transaction-{transaction_id}",
            replace_existing=True,
        )


def build_job_scheduler(session_factory: sessionmaker[Session] | None = None, cfg: Settings | None = None) -> JobScheduler:
    cfg = cfg or settings
    if (cfg.job_runner or "background").lower() == "inline":
        return InlineJobScheduler(session_factory, cfg)
    return BackgroundJobScheduler(session_factory, cfg)


def get_job_scheduler(request: Request) -> JobScheduler:
    return request.app.state.job_scheduler
