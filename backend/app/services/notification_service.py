"""
Redis pub/sub notification sink for lifecycle events.

What we publish:
  - registration_confirmed, registration_waitlisted, registration_cancelled
  - waitlist_promoted (one message per promoted registration)
  - bulk_request_pending, bulk_request_approved, bulk_request_rejected

Services never publish directly. They `queue_event` on the session, and the
unit of work (app.db.session.unit_of_work) publishes the queue after the
transaction commits, or drops it on rollback. Subscribers therefore never
hear about a state that was rolled back, and no Redis round trip happens
while an event row lock is held.

Delivery is fire-and-forget. A Redis outage is logged and counted, never
raised, so the lifecycle keeps working without the sink. Subscribers
(mailers, dashboards) must tolerate gaps and duplicates.
"""

import json
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.metrics import notification_errors

logger = get_logger(__name__)
settings = get_settings()

# session.info key holding (kind, queued_at, payload) tuples until commit
OUTBOX_KEY = "pending_notifications"

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await _redis_client.ping()
            logger.info("redis_connected", url=settings.REDIS_URL)
        except Exception as e:
            logger.error("redis_connection_failed", error=str(e))
            _redis_client = None
            return None

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None


async def publish_event(kind: str, at: Optional[datetime] = None, **payload) -> None:
    client = await get_redis()
    if not client:
        return

    message = json.dumps({"kind": kind, "at": (at or utcnow()).isoformat(), **payload}, default=str)
    try:
        await client.publish(settings.NOTIFICATION_CHANNEL, message)
        logger.debug("notification_published", kind=kind)
    except Exception as e:
        notification_errors.inc()
        logger.error("notification_publish_error", kind=kind, error=str(e))


def queue_event(db: AsyncSession, kind: str, **payload) -> None:
    """Hold a notification on the session until its transaction commits."""
    db.info.setdefault(OUTBOX_KEY, []).append((kind, utcnow(), payload))


def pending_events(db: AsyncSession) -> list:
    return db.info.get(OUTBOX_KEY, [])


def truncate_events(db: AsyncSession, keep: int) -> None:
    """Forget messages queued by a savepoint that was rolled back."""
    outbox = db.info.get(OUTBOX_KEY)
    if outbox is not None:
        del outbox[keep:]


def discard_events(db: AsyncSession) -> None:
    dropped = db.info.pop(OUTBOX_KEY, [])
    if dropped:
        logger.info("notifications_discarded", count=len(dropped), kinds=[kind for kind, _, _ in dropped])


async def flush_events(db: AsyncSession) -> None:
    """Publish everything queued on a committed session."""
    for kind, queued_at, payload in db.info.pop(OUTBOX_KEY, []):
        await publish_event(kind, at=queued_at, **payload)


async def get_notifier_status() -> dict:
    """Sink status for the health endpoint."""
    client = await get_redis()
    if not client:
        return {"status": "disabled"}

    try:
        await client.ping()
        return {"status": "connected", "channel": settings.NOTIFICATION_CHANNEL}
    except Exception as e:
        return {"status": "error", "error": str(e)}
