"""
The per-event confirmed counter: the only hot shared counter in the system.

CONCURRENCY STRATEGY: Guarded atomic UPDATE
===========================================

Problem:
  Two students try to take the last slot simultaneously.
  Both read confirmed_count = capacity - 1, both insert, both are confirmed.
  Result: Overbooking.

Solution:
  The read-check-write happens in a single statement:

    UPDATE events
       SET confirmed_count = confirmed_count + :n, version = version + 1
     WHERE id = :event_id
       AND (capacity IS NULL OR confirmed_count + :n <= capacity)

  rowcount == 1 means the slots are ours, 0 means the event is full.
  PostgreSQL takes the row lock for the UPDATE and re-evaluates the WHERE
  against the committed row once a competing transaction finishes, so two
  "last slot" claims serialize and exactly one wins. No explicit SELECT FOR
  UPDATE, no version retry loop: a lost race is an answer (full), not a
  conflict. The row lock is held until commit, which also serializes the
  waitlist promotion for the same event. Other events are untouched.

  The CHECK constraint (confirmed_count >= 0) is the safety net for releases.
"""

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.metrics import record_db_operation
from app.models.event import Event

logger = get_logger(__name__)


async def claim_slots(
    db: AsyncSession,
    event_id: int,
    count: int = 1,
    allow_overflow: bool = False,
) -> bool:
    """
    Atomically take `count` confirmed slots. Returns False when the event
    does not have room. `allow_overflow` is the admin capacity override.
    """
    stmt = (
        update(Event)
        .where(Event.id == event_id)
        .values(
            confirmed_count=Event.confirmed_count + count,
            version=Event.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if not allow_overflow:
        stmt = stmt.where(
            or_(Event.capacity.is_(None), Event.confirmed_count + count <= Event.capacity)
        )

    result = await db.execute(stmt)
    record_db_operation("write")
    claimed = result.rowcount == 1
    if not claimed:
        logger.info("capacity_claim_rejected", event_id=event_id, requested=count)
    return claimed


async def release_slots(db: AsyncSession, event_id: int, count: int = 1) -> None:
    await db.execute(
        update(Event)
        .where(Event.id == event_id, Event.confirmed_count >= count)
        .values(
            confirmed_count=Event.confirmed_count - count,
            version=Event.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    record_db_operation("write")

