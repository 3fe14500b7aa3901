from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..cache.memory import InMemoryAsyncCache
from ..config import Settings, settings as default_settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..logging.audit_logger import AuditLogger
from .credit_service import CreditService


logger = logging.getLogger(__name__)


def create_db_manager(config: Optional[Settings] = None) -> BaseDBManager:
    config = config or default_settings
    if config.MONGO_URI:
        from ..db.mongo import MongoDBManager

        return MongoDBManager.from_client_uri(config.MONGO_URI, config.MONGO_DB)
    logger.warning("MONGO_URI not set; using in-memory storage")
    return InMemoryDBManager()


def create_credit_service(
    config: Optional[Settings] = None, db: Optional[BaseDBManager] = None
) -> CreditService:
    config = config or default_settings
    db = db or create_db_manager(config)
    audit_path = Path(config.AUDIT_LOG_PATH) if config.AUDIT_LOG_PATH else None
    return CreditService(
        db=db,
        audit=AuditLogger(db=db, file_path=audit_path),
        cache=InMemoryAsyncCache(),
        free_plan_credits=config.FREE_PLAN_CREDITS,
        plan_cache_ttl_seconds=config.PLAN_CACHE_TTL_SECONDS,
        reconcile_on_confirm=config.RECONCILE_ON_CONFIRM,
        run_monthly_reroll_on_preauth=config.RUN_MONTHLY_REROLL_ON_PREAUTH,
    )
