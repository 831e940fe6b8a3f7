"""Celery sweep for contract events whose handlers have not all succeeded."""

import logging

from coffee_contracts.core.config import settings
from coffee_contracts.db.session import async_session_factory
from coffee_contracts.workers import celery_app, worker_loop

logger = logging.getLogger(__name__)


@celery_app.task(
    name="process_contract_events", bind=True, max_retries=3, default_retry_delay=30
)
def process_contract_events(self) -> dict:
    """Retry pending post-transition handlers (copy archiving, notifications)."""
    from coffee_contracts.services.contract_events import process_pending_events

    async def _run() -> dict:
        async with async_session_factory() as db:
            try:
                done, failed = await process_pending_events(
                    db, limit=settings.contract_event_batch_size
                )
            finally:
                await db.close()
        if done or failed:
            logger.info("Contract events processed: %d done, %d still failing", done, failed)
        return {"done": done, "failed": failed}

    try:
        return worker_loop().run_until_complete(_run())
    except Exception as exc:
        logger.exception("process_contract_events failed")
        raise self.retry(exc=exc)
