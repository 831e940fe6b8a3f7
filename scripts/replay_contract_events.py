"""Re-run unfinished post-transition handlers for one contract.

Use when a contract was signed or completed but its archive copies or
notification e-mails did not go out, and you do not want to wait for the
periodic sweep (or the event already hit the attempt limit).

Usage:
    python -m scripts.replay_contract_events 37
    python -m scripts.replay_contract_events 37 --dry-run
"""

import asyncio
import sys

from coffee_contracts.db.session import async_session_factory, engine
from coffee_contracts.services.contract_events import get_pending_events, process_pending_events


async def replay(contract_id: int, dry_run: bool = False) -> int:
    async with async_session_factory() as db:
        events = await get_pending_events(db, contract_id=contract_id)
        if not events:
            print(f"No pending events for contract_id={contract_id}")
            return 0

        print(f"Pending events for contract #{contract_id}:")
        for event in events:
            print(
                f"  #{event.id} {event.event_type}: handlers={event.pending_handlers} "
                f"attempts={event.attempts} last_error={event.last_error}"
            )
        print()

        if dry_run:
            print("Dry run, nothing executed.")
            return 0

        done, failed = await process_pending_events(db, contract_id=contract_id)
        print(f"Done: {done}, still failing: {failed}")
        return 1 if failed else 0


async def main() -> int:
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    if len(args) != 1 or not args[0].isdigit():
        print("Usage: python -m scripts.replay_contract_events <contract_id> [--dry-run]")
        return 2
    try:
        return await replay(int(args[0]), dry_run="--dry-run" in sys.argv)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
