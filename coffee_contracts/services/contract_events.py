"""Post-transition side effects of contracts (outbox pattern).

A transition that has side effects writes a ContractEvent in the same
transaction as the status change. After commit the handlers named in
``pending_handlers`` run one by one, each inside its own SAVEPOINT; a
handler that succeeds is removed from the list, a handler that fails stays
and is retried by the ``process_contract_events`` worker. Handlers are
idempotent, so re-running an event never duplicates copies.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coffee_contracts.core.config import settings
from coffee_contracts.models.contract import Contract
from coffee_contracts.models.contract_copy import ContractCopy
from coffee_contracts.models.contract_event import ContractEvent
from coffee_contracts.services.contract_state_machine import DependencyFailureError

logger = logging.getLogger(__name__)

EVENT_PLATFORM_SIGNED = "contract.platform_signed"
EVENT_COMPLETED = "contract.completed"

HANDLER_ARCHIVE_COPIES = "archive_copies"
HANDLER_NOTIFY_SIGNED = "notify_signed"

# Event payload key listing recipients a notification already reached
DELIVERED_TO = "delivered_to"

EVENT_HANDLERS: dict[str, list[str]] = {
    EVENT_PLATFORM_SIGNED: [HANDLER_ARCHIVE_COPIES, HANDLER_NOTIFY_SIGNED],
    EVENT_COMPLETED: [HANDLER_ARCHIVE_COPIES],
}

_SNAPSHOT_FIELDS = (
    "contract_number", "status", "buyer_id", "seller_id", "buyer_role", "seller_role",
    "order_type", "items", "total_amount", "currency", "platform_commission_rate",
    "platform_commission_amount", "seller_net_amount", "commission_payment_method",
    "commission_paid_at", "seller_signed_at", "buyer_signed_at", "platform_signed_at",
    "seller_payment_confirmed", "seller_paid_at",
)


def contract_snapshot(contract: Contract) -> dict:
    """JSON-ready copy of the commercial and signature state of a contract."""
    snapshot: dict = {"id": contract.id}
    for field in _SNAPSHOT_FIELDS:
        value = getattr(contract, field)
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        snapshot[field] = value
    return snapshot


def record_event(db: AsyncSession, contract: Contract, event_type: str, **payload) -> ContractEvent:
    """Stage an outbox event in the current transaction (no commit)."""
    event = ContractEvent(
        contract_id=contract.id,
        event_type=event_type,
        payload={"status": contract.status, **payload},
        pending_handlers=list(EVENT_HANDLERS[event_type]),
        attempts=0,
    )
    db.add(event)
    return event


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def archive_contract_copies(db: AsyncSession, contract: Contract, event: ContractEvent) -> int:
    """Create the buyer and seller copies that do not exist yet; returns how many were added."""
    result = await db.execute(
        select(ContractCopy.user_role).where(ContractCopy.contract_id == contract.id)
    )
    existing = set(result.scalars().all())

    snapshot = contract_snapshot(contract)
    created = 0
    for role, user_id in (("buyer", contract.buyer_id), ("seller", contract.seller_id)):
        if role in existing:
            continue
        db.add(ContractCopy(
            contract_id=contract.id,
            user_id=user_id,
            user_role=role,
            snapshot=snapshot,
        ))
        created += 1
    await db.flush()

    if created:
        logger.info(
            "Archived contract copies",
            extra={"contract_id": contract.id, "copies": created, "event": event.event_type},
        )
    return created


async def notify_signed(db: AsyncSession, contract: Contract, event: ContractEvent) -> int:
    from coffee_contracts.services.notification import notify_contract_signed

    return await notify_contract_signed(contract, skip=(event.payload or {}).get(DELIVERED_TO, []))


HANDLERS: dict[str, Callable[[AsyncSession, Contract, ContractEvent], Awaitable[int]]] = {
    HANDLER_ARCHIVE_COPIES: archive_contract_copies,
    HANDLER_NOTIFY_SIGNED: notify_signed,
}


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


async def run_event_handlers(
    db: AsyncSession,
    event: ContractEvent,
    contract: Contract,
) -> list[DependencyFailureError]:
    """Run every pending handler of one event, committing progress after each.

    Returns the failures; they are logged and recorded on the event, never raised.
    """
    failures: list[DependencyFailureError] = []
    remaining = list(event.pending_handlers or [])

    for name in list(remaining):
        handler = HANDLERS.get(name)
        if handler is None:
            logger.error("Unknown contract event handler %r on event %s", name, event.id)
            continue
        try:
            async with db.begin_nested():
                await handler(db, contract, event)
        except Exception as exc:
            failure = DependencyFailureError(contract.id, name, exc)
            failures.append(failure)
            # Written outside the rolled-back savepoint so the retry skips them
            delivered = getattr(exc, "delivered", None)
            if delivered:
                event.payload = {**(event.payload or {}), DELIVERED_TO: delivered}
            logger.exception(
                "Contract event handler failed",
                extra={"contract_id": contract.id, "event_id": event.id, "handler": name},
            )
            continue
        remaining.remove(name)

    event.pending_handlers = remaining
    event.attempts = (event.attempts or 0) + 1
    event.last_error = "; ".join(str(f) for f in failures) or None
    if not remaining:
        event.processed_at = datetime.now(timezone.utc)

    if failures:
        from coffee_contracts.services.audit import log_audit

        await log_audit(
            db,
            action="contract_event_failed",
            entity_type="contract",
            entity_id=contract.id,
            actor="system",
            details={
                "event_id": event.id,
                "event_type": event.event_type,
                "handlers": [f.handler for f in failures],
                "attempt": event.attempts,
            },
        )
    await db.commit()
    return failures


async def dispatch_after_commit(
    db: AsyncSession,
    contract: Contract,
    events: list[ContractEvent],
) -> None:
    """Run freshly committed events inline. Anything left over is picked up by the sweep."""
    for event in events:
        try:
            await run_event_handlers(db, event, contract)
        except Exception:
            logger.exception(
                "Inline dispatch of contract event failed, leaving it to the sweep",
                extra={"contract_id": contract.id, "event_type": event.event_type},
            )


async def get_pending_events(
    db: AsyncSession,
    *,
    contract_id: int | None = None,
    limit: int | None = None,
) -> list[ContractEvent]:
    """Unprocessed events, oldest first.

    Without ``contract_id`` only events below the attempt limit are returned
    and rows locked by another worker are skipped.
    """
    query = select(ContractEvent).where(ContractEvent.processed_at.is_(None))
    if contract_id is not None:
        query = query.where(ContractEvent.contract_id == contract_id)
    else:
        query = query.where(
            ContractEvent.attempts < settings.contract_event_max_attempts
        ).with_for_update(skip_locked=True)
    query = query.order_by(ContractEvent.created_at.asc())
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def process_pending_events(
    db: AsyncSession,
    *,
    contract_id: int | None = None,
    limit: int | None = None,
) -> tuple[int, int]:
    """Retry unprocessed events. Returns (events completed, events still failing)."""
    events = await get_pending_events(db, contract_id=contract_id, limit=limit)
    done = failed = 0
    for event in events:
        result = await db.execute(select(Contract).where(Contract.id == event.contract_id))
        contract = result.scalar_one_or_none()
        if contract is None:
            logger.warning("Contract %d of event %d is gone, dropping event", event.contract_id, event.id)
            event.pending_handlers = []
            event.processed_at = datetime.now(timezone.utc)
            await db.commit()
            continue
        failures = await run_event_handlers(db, event, contract)
        if failures:
            failed += 1
        else:
            done += 1
    return done, failed
