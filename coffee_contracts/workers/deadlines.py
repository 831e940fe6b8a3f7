"""Celery task for the seller response deadline.

- expire_unanswered_contracts: contracts still waiting on the seller after
  ``seller_response_hours`` are rejected by the system, which opens the
  buyer's refund path when a commission was paid.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from coffee_contracts.db.session import async_session_factory
from coffee_contracts.models.contract import Contract
from coffee_contracts.services.contract_state_machine import (
    ConcurrencyConflictError,
    InvalidTransitionError,
)
from coffee_contracts.workers import celery_app, worker_loop

logger = logging.getLogger(__name__)


async def expire_overdue(db, now: datetime | None = None) -> int:
    """Expire every contract past its seller response deadline. Returns how many were expired."""
    from coffee_contracts.services.contract import expire_contract, get_contracts_past_deadline

    now = now or datetime.now(timezone.utc)
    count = 0
    # A rollback expires every loaded row, so each contract is re-read by id
    contract_ids = [c.id for c in await get_contracts_past_deadline(db, now)]
    for contract_id in contract_ids:
        try:
            result = await db.execute(select(Contract).where(Contract.id == contract_id))
            contract = result.scalar_one_or_none()
            if contract is None:
                continue
            await expire_contract(db, contract)
            count += 1
        except (ConcurrencyConflictError, InvalidTransitionError):
            # The seller acted in the meantime
            logger.info("Contract %d moved on before expiry, skipping", contract_id)
            await db.rollback()
        except Exception:
            logger.exception("Failed to expire contract %d", contract_id)
            await db.rollback()
    logger.info("Expired %d unanswered contracts", count)
    return count


@celery_app.task(
    name="expire_unanswered_contracts", bind=True, max_retries=3, default_retry_delay=60
)
def expire_unanswered_contracts(self) -> int:
    """Auto-reject contracts whose seller let the response deadline pass."""

    async def _run() -> int:
        async with async_session_factory() as db:
            try:
                return await expire_overdue(db)
            finally:
                await db.close()

    try:
        return worker_loop().run_until_complete(_run())
    except Exception as exc:
        logger.exception("expire_unanswered_contracts failed")
        raise self.retry(exc=exc)
