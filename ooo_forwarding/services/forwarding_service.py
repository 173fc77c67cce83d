"""Forwarding schedule intake service.

Creates, supersedes and cancels forwarding schedules. A user has at most one
pending/active schedule; creating a new one cancels the old one first.

Activation happens immediately when the window is already open, otherwise
the reconciler picks the schedule up when its window starts. Failures of the
mail system never block the store: the schedule is still written (pending)
and the caller gets a warning.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ooo_forwarding.core.structured_logging import build_log_context, mask_email
from ooo_forwarding.db.enums import ForwardingStatus
from ooo_forwarding.db.models import ForwardingSchedule
from ooo_forwarding.services.mail_rule_gateway import (
    MailRule,
    MailRuleGateway,
    MailRuleGatewayError,
    call_with_timeout,
)

logger = logging.getLogger(__name__)

GATEWAY_NOT_CONFIGURED = "Mail system is not configured"
SUPERSEDE_ATTEMPTS = 3


class ForwardingServiceError(Exception):
    """Base exception for forwarding schedule errors."""

    pass


class ScheduleValidationError(ForwardingServiceError):
    """Request is malformed (bad window, missing destination)."""

    pass


class ScheduleNotFoundError(ForwardingServiceError):
    """Schedule does not exist or belongs to another mailbox."""

    pass


class ScheduleStateError(ForwardingServiceError):
    """Schedule is not in a state that allows the operation."""

    pass


class ScheduleConflictError(ForwardingServiceError):
    """Another open schedule was written concurrently for the same mailbox."""

    pass


@dataclass
class ScheduleCreateResult:
    schedule: ForwardingSchedule
    warning: str | None = None


@dataclass
class ScheduleCancelResult:
    schedule: ForwardingSchedule
    rule_disabled: bool


# =============================================================================
# Helpers (shared with the reconciler)
# =============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are UTC (SQLite drops tzinfo); aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def window_is_open(schedule: ForwardingSchedule, now: datetime) -> bool:
    """True when now is inside the half-open window [starts_at, ends_at)."""
    return ensure_utc(schedule.starts_at) <= now < ensure_utc(schedule.ends_at)


def transition_schedule(
    db: Session,
    schedule_id: UUID,
    expected: ForwardingStatus,
    target: ForwardingStatus | None = None,
    **values,
) -> bool:
    """
    Conditionally update a schedule that is still in ``expected`` status.

    Returns False when the row moved on underneath us (another pass or an
    intake request won the race); nothing is written in that case.
    """
    if target is not None:
        values["status"] = target.value
    values.setdefault("updated_at", utcnow())

    result = db.execute(
        update(ForwardingSchedule)
        .where(
            ForwardingSchedule.id == schedule_id,
            ForwardingSchedule.status == expected.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def after_lost_activation(db: Session, schedule_id: UUID) -> None:
    """
    The rule was enabled but the row moved on concurrently. If it was
    cancelled meanwhile, the rule we just enabled must be cleaned up.
    """
    current = db.get(ForwardingSchedule, schedule_id)
    if current is None:
        return
    db.refresh(current)
    logger.info("Schedule %s changed to %s during activation", schedule_id, current.status)
    if current.status == ForwardingStatus.CANCELLED.value and not current.rule_cleanup_pending:
        transition_schedule(
            db, schedule_id, ForwardingStatus.CANCELLED, rule_cleanup_pending=True
        )


async def enable_forwarding_rule(
    gateway: MailRuleGateway, schedule: ForwardingSchedule
) -> MailRule:
    """Create or update the mailbox's forwarding rule, enabled."""
    return await call_with_timeout(
        gateway.create_or_update_rule(
            schedule.user_email,
            schedule.forward_to_email,
            schedule.forward_to_name or schedule.forward_to_email,
            True,
        )
    )


async def disable_forwarding_rule(
    gateway: MailRuleGateway, mailbox: str, rule_id: str | None
) -> None:
    """
    Disable then remove the mailbox's forwarding rule.

    Disabling must succeed; removal is cleanup and only logged on failure.
    """
    await call_with_timeout(gateway.disable(mailbox, rule_id))
    removed = await call_with_timeout(gateway.delete(mailbox, rule_id))
    if not removed:
        logger.warning(
            "Forwarding rule disabled but not removed for %s", mask_email(mailbox)
        )


async def _try_disable_rule(
    gateway: MailRuleGateway | None, schedule: ForwardingSchedule
) -> bool:
    """Best-effort disable used by cancel/supersede."""
    if gateway is None:
        logger.warning(
            "Cannot disable forwarding rule for %s: %s",
            mask_email(schedule.user_email),
            GATEWAY_NOT_CONFIGURED,
        )
        return False
    try:
        await disable_forwarding_rule(gateway, schedule.user_email, schedule.external_rule_id)
    except MailRuleGatewayError as e:
        logger.warning(
            "Failed to disable forwarding rule for schedule %s: %s",
            schedule.id,
            e,
            extra=build_log_context(
                schedule_id=str(schedule.id), user_email=schedule.user_email
            ),
        )
        return False
    return True


def _validate_window(starts_at: datetime, ends_at: datetime) -> tuple[datetime, datetime]:
    starts_at = ensure_utc(starts_at)
    ends_at = ensure_utc(ends_at)
    if starts_at >= ends_at:
        raise ScheduleValidationError("Forwarding must end after it starts")
    return starts_at, ends_at


# =============================================================================
# Queries
# =============================================================================

def get_schedule(db: Session, schedule_id: UUID) -> ForwardingSchedule | None:
    return db.get(ForwardingSchedule, schedule_id)


def get_open_schedules(db: Session, user_email: str) -> list[ForwardingSchedule]:
    """Pending/active schedules for a mailbox (normally zero or one)."""
    return (
        db.query(ForwardingSchedule)
        .filter(
            ForwardingSchedule.user_email == normalize_email(user_email),
            ForwardingSchedule.status.in_(ForwardingStatus.open_values()),
        )
        .order_by(ForwardingSchedule.created_at.desc())
        .all()
    )


def get_current_schedule(db: Session, user_email: str) -> ForwardingSchedule | None:
    schedules = get_open_schedules(db, user_email)
    return schedules[0] if schedules else None


def list_schedules(
    db: Session, user_email: str, limit: int = 50
) -> list[ForwardingSchedule]:
    """Schedule history for a mailbox, newest first."""
    return (
        db.query(ForwardingSchedule)
        .filter(ForwardingSchedule.user_email == normalize_email(user_email))
        .order_by(ForwardingSchedule.created_at.desc(), ForwardingSchedule.id)
        .limit(limit)
        .all()
    )


# =============================================================================
# Intake
# =============================================================================

async def _supersede(
    db: Session, gateway: MailRuleGateway | None, schedule: ForwardingSchedule
) -> None:
    """Cancel an open schedule that a new request replaces."""
    previous = schedule.status_enum
    rule_disabled = True
    if previous == ForwardingStatus.ACTIVE:
        rule_disabled = await _try_disable_rule(gateway, schedule)

    moved = transition_schedule(
        db,
        schedule.id,
        previous,
        ForwardingStatus.CANCELLED,
        rule_cleanup_pending=not rule_disabled,
    )
    if moved:
        logger.info(
            "Superseded forwarding schedule %s (%s)",
            schedule.id,
            previous.value,
            extra=build_log_context(schedule_id=str(schedule.id), user_email=schedule.user_email),
        )


async def create_schedule(
    db: Session,
    gateway: MailRuleGateway | None,
    user_email: str,
    forward_to_email: str,
    forward_to_name: str | None,
    starts_at: datetime,
    ends_at: datetime,
    now: datetime | None = None,
) -> ScheduleCreateResult:
    """
    Declare a new forwarding window for ``user_email``.

    Any open schedule for the mailbox is cancelled first (its rule disabled if
    it was active). The new row is committed as pending before the mail
    system is touched, so a concurrent request that loses the one-open-slot
    race never changes the mailbox's rule. If the window is open now the rule
    is then enabled right away; if that fails the schedule stays pending with
    a warning and the reconciler retries.

    Raises:
        ScheduleValidationError: bad window or destination, nothing persisted
        ScheduleConflictError: concurrent create for the same mailbox
    """
    user_email = normalize_email(user_email)
    forward_to_email = normalize_email(forward_to_email)
    forward_to_name = (forward_to_name or "").strip() or None

    if not user_email:
        raise ScheduleValidationError("Mailbox is required")
    if not forward_to_email or "@" not in forward_to_email:
        raise ScheduleValidationError("A valid forwarding address is required")
    if forward_to_email == user_email:
        raise ScheduleValidationError("Cannot forward a mailbox to itself")
    starts_at, ends_at = _validate_window(starts_at, ends_at)
    now = ensure_utc(now) if now else utcnow()

    # A reconciler pass may move a row between our read and write; re-read
    for _ in range(SUPERSEDE_ATTEMPTS):
        open_schedules = get_open_schedules(db, user_email)
        if not open_schedules:
            break
        for existing in open_schedules:
            await _supersede(db, gateway, existing)

    schedule = ForwardingSchedule(
        user_email=user_email,
        forward_to_email=forward_to_email,
        forward_to_name=forward_to_name,
        starts_at=starts_at,
        ends_at=ends_at,
        status=ForwardingStatus.PENDING.value,
        created_at=now,
        updated_at=now,
    )

    # Claim the mailbox's open slot before any external call
    db.add(schedule)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ScheduleConflictError(
            "Another forwarding schedule was created for this mailbox at the same time"
        ) from e
    db.refresh(schedule)
    schedule_id = schedule.id

    warning = None
    if starts_at <= now < ends_at:
        warning = await _activate_now(db, gateway, schedule)
    db.refresh(schedule)

    logger.info(
        "Created forwarding schedule %s (%s)",
        schedule_id,
        schedule.status,
        extra=build_log_context(
            schedule_id=str(schedule_id), user_email=user_email, status=schedule.status
        ),
    )
    return ScheduleCreateResult(schedule=schedule, warning=warning)


async def _activate_now(
    db: Session, gateway: MailRuleGateway | None, schedule: ForwardingSchedule
) -> str | None:
    """Enable the rule for a freshly stored pending schedule; returns a warning on failure."""
    schedule_id = schedule.id
    if gateway is None:
        warning = f"{GATEWAY_NOT_CONFIGURED}; forwarding will start once it is available"
    else:
        try:
            rule = await enable_forwarding_rule(gateway, schedule)
        except MailRuleGatewayError as e:
            warning = f"Forwarding could not be enabled yet and will be retried: {e}"
        else:
            if not transition_schedule(
                db,
                schedule_id,
                ForwardingStatus.PENDING,
                ForwardingStatus.ACTIVE,
                external_rule_id=rule.id,
            ):
                after_lost_activation(db, schedule_id)
            return None

    logger.warning(
        "Immediate activation failed for %s",
        mask_email(schedule.user_email),
        extra=build_log_context(schedule_id=str(schedule_id), user_email=schedule.user_email),
    )
    transition_schedule(db, schedule_id, ForwardingStatus.PENDING, last_error=warning)
    return warning


# =============================================================================
# Cancel
# =============================================================================

async def cancel_schedule(
    db: Session,
    gateway: MailRuleGateway | None,
    schedule_id: UUID,
    user_email: str | None = None,
) -> ScheduleCancelResult:
    """
    Cancel a pending or active schedule.

    An active schedule's rule is disabled first. If that cannot be confirmed
    the schedule is still cancelled and flagged for the reconciler to clean up.

    Raises:
        ScheduleNotFoundError: unknown id, or owned by another mailbox
        ScheduleStateError: schedule already expired/cancelled
    """
    schedule = get_schedule(db, schedule_id)
    if not schedule or (user_email and schedule.user_email != normalize_email(user_email)):
        raise ScheduleNotFoundError(f"Forwarding schedule {schedule_id} not found")

    previous = schedule.status_enum
    if previous.is_terminal:
        raise ScheduleStateError(f"Forwarding schedule is already {previous.value}")

    rule_disabled = True
    if previous == ForwardingStatus.ACTIVE:
        rule_disabled = await _try_disable_rule(gateway, schedule)

    moved = transition_schedule(
        db,
        schedule.id,
        previous,
        ForwardingStatus.CANCELLED,
        rule_cleanup_pending=not rule_disabled,
    )
    db.refresh(schedule)
    if not moved:
        raise ScheduleStateError(
            f"Forwarding schedule changed to {schedule.status} while cancelling"
        )

    logger.info(
        "Cancelled forwarding schedule %s (was %s, rule_disabled=%s)",
        schedule.id,
        previous.value,
        rule_disabled,
        extra=build_log_context(schedule_id=str(schedule.id), user_email=schedule.user_email),
    )
    return ScheduleCancelResult(schedule=schedule, rule_disabled=rule_disabled)


async def cancel_current_schedule(
    db: Session, gateway: MailRuleGateway | None, user_email: str
) -> ScheduleCancelResult:
    """Cancel the mailbox's pending/active schedule."""
    current = get_current_schedule(db, user_email)
    if not current:
        raise ScheduleNotFoundError("No pending or active forwarding schedule")
    return await cancel_schedule(db, gateway, current.id, user_email=user_email)


# =============================================================================
# Status
# =============================================================================

async def get_forwarding_status(
    db: Session, gateway: MailRuleGateway | None, user_email: str
) -> dict:
    """Current schedule next to the rule the mail system actually enforces."""
    status: dict = {
        "gateway_configured": gateway is not None,
        "schedule": get_current_schedule(db, user_email),
        "rule": None,
        "rule_error": None,
    }
    if gateway is None:
        return status

    try:
        rule = await call_with_timeout(gateway.get_rule(normalize_email(user_email)))
    except MailRuleGatewayError as e:
        status["rule_error"] = str(e)
    else:
        status["rule"] = rule.model_dump() if rule else None
    return status
