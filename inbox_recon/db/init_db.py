from __future__ import annotations

import logging

from inbox_recon.db.base import Base
from inbox_recon.db.session import ENGINE
from inbox_recon.models import models  # noqa: F401  (registers the tables on Base.metadata)

logger = logging.getLogger(__name__)


def init_db(engine=None) -> None:
    engine = engine or ENGINE
    Base.metadata.create_all(bind=engine)
    logger.info(
        "Schema ready: %d tables on %s",
        len(Base.metadata.tables),
        engine.url.render_as_string(hide_password=True),
    )
