"""
Authenticated actors and the restrictions attached to each role.

Instead of branching on a role string throughout the services, every
role is its own type and carries its own rules:

  AdminActor         unrestricted bulk uploads, may override capacity,
                     may approve/reject requests and force-cancel
  EventManagerActor  own events only, DRAFT/REJECTED only, own school's
                     students only, size cap, cooldown and daily caps,
                     large uploads need admin approval
  StudentActor       may cancel only their own registrations

Rate limits are derived from the persisted BulkRegistrationLog history,
never from process-local counters, so every worker sees the same limits.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import ensure_utc
from app.core.config import get_settings
from app.core.exceptions import InvalidStateError, OwnershipError, RateLimitedError, ValidationError
from app.models.bulk import ActorRole, BulkRegistrationLog
from app.models.event import BULK_REGISTRABLE, MANAGER_EDITABLE, Event
from app.models.registration import EventRegistration

# First key of the two-key advisory lock taken around rate-limit checks
UPLOAD_LOCK_NAMESPACE = 7301


@dataclass(frozen=True)
class BulkLimits:
    max_upload_size: int
    approval_threshold: int
    cooldown_minutes: int
    cooldown_min_rows: int
    max_uploads_per_day: int
    max_students_per_day: int
    attention_threshold: int
    request_ttl_days: int
    rejection_reason_min_length: int

    @classmethod
    def from_settings(cls) -> "BulkLimits":
        settings = get_settings()
        return cls(
            max_upload_size=settings.BULK_MAX_UPLOAD_SIZE,
            approval_threshold=settings.BULK_APPROVAL_THRESHOLD,
            cooldown_minutes=settings.BULK_COOLDOWN_MINUTES,
            cooldown_min_rows=settings.BULK_COOLDOWN_MIN_ROWS,
            max_uploads_per_day=settings.BULK_MAX_UPLOADS_PER_DAY,
            max_students_per_day=settings.BULK_MAX_STUDENTS_PER_DAY,
            attention_threshold=settings.BULK_ATTENTION_THRESHOLD,
            request_ttl_days=settings.BULK_REQUEST_TTL_DAYS,
            rejection_reason_min_length=settings.REJECTION_REASON_MIN_LENGTH,
        )


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    reason: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    daily_uploads: int = 0
    daily_students: int = 0


@dataclass(frozen=True)
class Actor:
    actor_id: int

    role = None

    @property
    def is_admin(self) -> bool:
        return False

    @property
    def school_scope(self) -> Optional[int]:
        """School the actor may register students from; None means any school."""
        return None

    def require_admin(self) -> None:
        raise OwnershipError("This action requires an administrator.")

    def authorize_bulk_upload(self, event: Event, size: int, limits: BulkLimits, capacity_override: bool) -> None:
        raise OwnershipError("You are not allowed to bulk register students.")

    async def rate_limit_status(self, db: AsyncSession, now: datetime, limits: BulkLimits) -> RateLimitStatus:
        return RateLimitStatus(allowed=True)

    async def lock_upload_history(self, db: AsyncSession) -> None:
        """Serialize concurrent uploads by the same actor until the transaction ends."""

    async def check_rate_limit(self, db: AsyncSession, now: datetime, limits: BulkLimits) -> RateLimitStatus:
        await self.lock_upload_history(db)
        status = await self.rate_limit_status(db, now, limits)
        if not status.allowed:
            raise RateLimitedError(
                status.reason,
                retry_after_seconds=status.retry_after_seconds,
                daily_uploads=status.daily_uploads,
                daily_students=status.daily_students,
            )
        return status

    def requires_approval(self, size: int, limits: BulkLimits) -> bool:
        return False

    def authorize_registration(self, registration: EventRegistration, event: Event) -> None:
        raise OwnershipError("You are not allowed to manage this registration.")

    def visible_registrations(self, query: Select) -> Select:
        raise OwnershipError("You are not allowed to list registrations.")

    def authorize_event(self, event: Event) -> None:
        raise OwnershipError("You are not allowed to manage this event.")

    def organizer_for_new_event(self, requested: Optional[int]) -> Optional[int]:
        raise OwnershipError("You are not allowed to create events.")


@dataclass(frozen=True)
class AdminActor(Actor):
    role = ActorRole.ADMIN

    @property
    def is_admin(self) -> bool:
        return True

    def require_admin(self) -> None:
        return None

    def authorize_bulk_upload(self, event: Event, size: int, limits: BulkLimits, capacity_override: bool) -> None:
        if event.status not in BULK_REGISTRABLE:
            raise InvalidStateError(
                f"Event status {event.status.value} does not accept registrations.",
                event_status=event.status.value,
            )

    def authorize_registration(self, registration: EventRegistration, event: Event) -> None:
        return None

    def visible_registrations(self, query: Select) -> Select:
        return query

    def authorize_event(self, event: Event) -> None:
        return None

    def organizer_for_new_event(self, requested: Optional[int]) -> Optional[int]:
        return requested


@dataclass(frozen=True)
class EventManagerActor(Actor):
    school_id: Optional[int] = None

    role = ActorRole.EVENT_MANAGER

    @property
    def school_scope(self) -> Optional[int]:
        return self.school_id

    def authorize_bulk_upload(self, event: Event, size: int, limits: BulkLimits, capacity_override: bool) -> None:
        if size > limits.max_upload_size:
            raise ValidationError(
                f"Upload too large: maximum {limits.max_upload_size} students per upload.",
                size=size,
                max_upload_size=limits.max_upload_size,
            )
        if capacity_override:
            raise OwnershipError("Only administrators can override event capacity.")
        if event.organizer_id != self.actor_id:
            raise OwnershipError("You can only register students to your own events.")
        if event.status not in MANAGER_EDITABLE:
            raise InvalidStateError(
                f"Cannot register students to events with status {event.status.value}. "
                f"Only DRAFT and REJECTED events can be modified.",
                event_status=event.status.value,
            )

    async def lock_upload_history(self, db: AsyncSession) -> None:
        # SQLite transactions start with BEGIN IMMEDIATE and are already serial
        if db.get_bind().dialect.name == "postgresql":
            await db.execute(select(func.pg_advisory_xact_lock(UPLOAD_LOCK_NAMESPACE, self.actor_id)))

    async def upload_history(self, db: AsyncSession, since: datetime) -> list[BulkRegistrationLog]:
        result = await db.execute(
            select(BulkRegistrationLog)
            .where(
                BulkRegistrationLog.uploaded_by_user_id == self.actor_id,
                BulkRegistrationLog.uploaded_by_role == self.role,
                BulkRegistrationLog.created_at > since,
            )
            .order_by(BulkRegistrationLog.created_at.desc())
        )
        return list(result.scalars().all())

    async def rate_limit_status(self, db: AsyncSession, now: datetime, limits: BulkLimits) -> RateLimitStatus:
        day_ago = now - timedelta(hours=24)
        history = await self.upload_history(db, day_ago)
        daily_uploads = len(history)
        daily_students = sum(log.successful or 0 for log in history)

        cooldown = timedelta(minutes=limits.cooldown_minutes)
        for log in history:
            uploaded_at = ensure_utc(log.created_at)
            if log.total_attempted >= limits.cooldown_min_rows and uploaded_at > now - cooldown:
                remaining = (uploaded_at + cooldown - now).total_seconds()
                minutes = max(math.ceil(remaining / 60), 1)
                return RateLimitStatus(
                    allowed=False,
                    reason=f"Rate limit: please wait {minutes} more minute(s) before uploading again.",
                    retry_after_seconds=max(math.ceil(remaining), 1),
                    daily_uploads=daily_uploads,
                    daily_students=daily_students,
                )

        if daily_uploads >= limits.max_uploads_per_day:
            oldest = ensure_utc(history[-1].created_at)
            return RateLimitStatus(
                allowed=False,
                reason=(
                    f"Daily limit reached: maximum {limits.max_uploads_per_day} bulk uploads per day. "
                    f"Try again tomorrow."
                ),
                retry_after_seconds=max(math.ceil((oldest + timedelta(hours=24) - now).total_seconds()), 1),
                daily_uploads=daily_uploads,
                daily_students=daily_students,
            )

        if daily_students >= limits.max_students_per_day:
            return RateLimitStatus(
                allowed=False,
                reason=(
                    f"Daily student limit reached: maximum {limits.max_students_per_day} students per day. "
                    f"Try again tomorrow."
                ),
                retry_after_seconds=24 * 3600,
                daily_uploads=daily_uploads,
                daily_students=daily_students,
            )

        return RateLimitStatus(allowed=True, daily_uploads=daily_uploads, daily_students=daily_students)

    def requires_approval(self, size: int, limits: BulkLimits) -> bool:
        return size > limits.approval_threshold

    def authorize_registration(self, registration: EventRegistration, event: Event) -> None:
        if event.organizer_id != self.actor_id:
            raise OwnershipError("You can only manage registrations for your own events.")

    def visible_registrations(self, query: Select) -> Select:
        return query.join(Event, Event.id == EventRegistration.event_id).where(
            Event.organizer_id == self.actor_id
        )

    def authorize_event(self, event: Event) -> None:
        if event.organizer_id != self.actor_id:
            raise OwnershipError("You can only manage your own events.")

    def organizer_for_new_event(self, requested: Optional[int]) -> Optional[int]:
        return self.actor_id


@dataclass(frozen=True)
class StudentActor(Actor):
    role = ActorRole.STUDENT

    def authorize_registration(self, registration: EventRegistration, event: Event) -> None:
        if registration.student_id != self.actor_id:
            raise OwnershipError("You can only manage your own registrations.")

    def visible_registrations(self, query: Select) -> Select:
        return query.where(EventRegistration.student_id == self.actor_id)


def actor_from_claims(role: str, actor_id: int, school_id: Optional[int] = None) -> Actor:
    if role == ActorRole.ADMIN.value:
        return AdminActor(actor_id=actor_id)
    if role == ActorRole.EVENT_MANAGER.value:
        return EventManagerActor(actor_id=actor_id, school_id=school_id)
    if role == ActorRole.STUDENT.value:
        return StudentActor(actor_id=actor_id)
    raise ValidationError(f"Unknown role: {role}")
