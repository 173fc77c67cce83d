"""Forwarding schedule reconciler.

Single entry point shared by the interval loop, the internal cron endpoint
and the CLI:

1. Re-assert the rule of active schedules whose window is open when the
   mail system no longer enforces it (missing, disabled or wrong target).
2. Activate pending schedules whose window has started (or expire them as
   missed when the whole window already elapsed).
3. Deactivate active schedules whose window has ended.
4. Retry disabling rules of cancelled schedules whose cancel could not
   confirm the rule was turned off.

The external side effect always happens before the store transition that
depends on it, and every transition is conditional on the row still being in
the status this pass read, so overlapping passes never double-apply.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from ooo_forwarding.core.structured_logging import build_log_context, mask_email
from ooo_forwarding.db.enums import ForwardingStatus
from ooo_forwarding.db.models import ForwardingSchedule
from ooo_forwarding.services.forwarding_service import (
    after_lost_activation,
    disable_forwarding_rule,
    enable_forwarding_rule,
    ensure_utc,
    transition_schedule,
    utcnow,
)
from ooo_forwarding.services.mail_rule_gateway import MailRule, MailRuleGateway, call_with_timeout

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    activated: int = 0
    deactivated: int = 0
    missed: int = 0
    cleaned_up: int = 0
    repaired: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.activated or self.deactivated or self.missed or self.cleaned_up or self.repaired
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _describe(schedule: ForwardingSchedule) -> str:
    return f"schedule {schedule.id} ({mask_email(schedule.user_email)})"


def _record_failure(
    db: Session,
    result: ReconcileResult,
    schedule_id,
    expected: ForwardingStatus,
    message: str,
) -> None:
    logger.error(message)
    result.errors.append(message)
    try:
        transition_schedule(db, schedule_id, expected, last_error=message[:2000])
    except Exception:
        db.rollback()
        logger.exception("Could not record failure for schedule %s", schedule_id)


# =============================================================================
# Passes
# =============================================================================

def _rule_matches(rule: MailRule | None, schedule: ForwardingSchedule) -> bool:
    return bool(
        rule
        and rule.is_enabled
        and (rule.forward_to or "").lower() == schedule.forward_to_email
    )


async def _repair_drift(
    db: Session, gateway: MailRuleGateway, now: datetime, result: ReconcileResult
) -> None:
    running = (
        db.query(ForwardingSchedule)
        .filter(
            ForwardingSchedule.status == ForwardingStatus.ACTIVE.value,
            ForwardingSchedule.starts_at <= now,
            ForwardingSchedule.ends_at > now,
        )
        .order_by(ForwardingSchedule.starts_at)
        .all()
    )

    for schedule in running:
        schedule_id = schedule.id
        label = _describe(schedule)
        try:
            rule = await call_with_timeout(gateway.get_rule(schedule.user_email))
            if _rule_matches(rule, schedule):
                continue

            logger.warning(
                "Forwarding rule drifted for %s (%s)",
                label,
                "missing" if rule is None else ("disabled" if not rule.is_enabled else "retargeted"),
            )
            rule = await enable_forwarding_rule(gateway, schedule)

            if transition_schedule(
                db,
                schedule_id,
                ForwardingStatus.ACTIVE,
                external_rule_id=rule.id,
                last_error=None,
            ):
                result.repaired += 1
                logger.info(
                    "Repaired forwarding rule for %s",
                    label,
                    extra=build_log_context(schedule_id=str(schedule_id), status="active"),
                )
            else:
                after_lost_activation(db, schedule_id)
        except Exception as e:
            db.rollback()
            _record_failure(
                db,
                result,
                schedule_id,
                ForwardingStatus.ACTIVE,
                f"Failed to repair forwarding rule for {label}: {e}",
            )


async def _activate_due(
    db: Session, gateway: MailRuleGateway, now: datetime, result: ReconcileResult
) -> None:
    due = (
        db.query(ForwardingSchedule)
        .filter(
            ForwardingSchedule.status == ForwardingStatus.PENDING.value,
            ForwardingSchedule.starts_at <= now,
        )
        .order_by(ForwardingSchedule.starts_at)
        .all()
    )

    for schedule in due:
        schedule_id = schedule.id
        label = _describe(schedule)
        try:
            if now >= ensure_utc(schedule.ends_at):
                # Whole window elapsed before we ever got to it
                if transition_schedule(
                    db, schedule_id, ForwardingStatus.PENDING, ForwardingStatus.EXPIRED
                ):
                    result.missed += 1
                    logger.info("Forwarding window missed for %s", label)
                continue

            rule = await enable_forwarding_rule(gateway, schedule)

            if transition_schedule(
                db,
                schedule_id,
                ForwardingStatus.PENDING,
                ForwardingStatus.ACTIVE,
                external_rule_id=rule.id,
                last_error=None,
            ):
                result.activated += 1
                logger.info(
                    "Activated forwarding for %s",
                    label,
                    extra=build_log_context(schedule_id=str(schedule_id), status="active"),
                )
            else:
                after_lost_activation(db, schedule_id)
        except Exception as e:
            db.rollback()
            _record_failure(
                db,
                result,
                schedule_id,
                ForwardingStatus.PENDING,
                f"Failed to activate forwarding for {label}: {e}",
            )


async def _deactivate_ended(
    db: Session, gateway: MailRuleGateway, now: datetime, result: ReconcileResult
) -> None:
    ended = (
        db.query(ForwardingSchedule)
        .filter(
            ForwardingSchedule.status == ForwardingStatus.ACTIVE.value,
            ForwardingSchedule.ends_at <= now,
        )
        .order_by(ForwardingSchedule.ends_at)
        .all()
    )

    for schedule in ended:
        schedule_id = schedule.id
        label = _describe(schedule)
        try:
            await disable_forwarding_rule(gateway, schedule.user_email, schedule.external_rule_id)

            if transition_schedule(
                db,
                schedule_id,
                ForwardingStatus.ACTIVE,
                ForwardingStatus.EXPIRED,
                last_error=None,
            ):
                result.deactivated += 1
                logger.info(
                    "Deactivated forwarding for %s",
                    label,
                    extra=build_log_context(schedule_id=str(schedule_id), status="expired"),
                )
        except Exception as e:
            db.rollback()
            _record_failure(
                db,
                result,
                schedule_id,
                ForwardingStatus.ACTIVE,
                f"Failed to deactivate forwarding for {label}: {e}",
            )


def _has_active_schedule(db: Session, user_email: str) -> bool:
    return (
        db.query(ForwardingSchedule.id)
        .filter(
            ForwardingSchedule.user_email == user_email,
            ForwardingSchedule.status == ForwardingStatus.ACTIVE.value,
        )
        .first()
        is not None
    )


async def _clean_up_cancelled(
    db: Session, gateway: MailRuleGateway, result: ReconcileResult
) -> None:
    stale = (
        db.query(ForwardingSchedule)
        .filter(
            ForwardingSchedule.status == ForwardingStatus.CANCELLED.value,
            ForwardingSchedule.rule_cleanup_pending.is_(True),
        )
        .order_by(ForwardingSchedule.updated_at)
        .all()
    )

    for schedule in stale:
        schedule_id = schedule.id
        label = _describe(schedule)
        try:
            # The mailbox has one named rule; a newer active schedule owns it now
            if _has_active_schedule(db, schedule.user_email):
                transition_schedule(
                    db, schedule_id, ForwardingStatus.CANCELLED, rule_cleanup_pending=False
                )
                continue

            await disable_forwarding_rule(gateway, schedule.user_email, schedule.external_rule_id)

            if transition_schedule(
                db,
                schedule_id,
                ForwardingStatus.CANCELLED,
                rule_cleanup_pending=False,
                last_error=None,
            ):
                result.cleaned_up += 1
                logger.info("Disabled leftover forwarding rule for %s", label)
        except Exception as e:
            db.rollback()
            _record_failure(
                db,
                result,
                schedule_id,
                ForwardingStatus.CANCELLED,
                f"Failed to disable leftover forwarding rule for {label}: {e}",
            )


# =============================================================================
# Entry point
# =============================================================================

async def run_reconciliation(
    db: Session,
    gateway: MailRuleGateway | None,
    now: datetime | None = None,
    trigger: str = "manual",
) -> ReconcileResult:
    """
    Run one reconciliation pass.

    Safe to call repeatedly and from overlapping triggers. One schedule's
    failure is recorded in ``errors`` and never stops the rest of the pass.
    """
    result = ReconcileResult()
    if gateway is None:
        logger.info("Mail system not configured, skipping forwarding reconciliation")
        return result

    now = ensure_utc(now) if now else utcnow()

    await _repair_drift(db, gateway, now, result)
    await _activate_due(db, gateway, now, result)
    await _deactivate_ended(db, gateway, now, result)
    await _clean_up_cancelled(db, gateway, result)

    if result.changed or result.errors:
        logger.info(
            "Forwarding reconciliation complete (%s) - activated: %s, deactivated: %s, "
            "missed: %s, cleaned up: %s, repaired: %s, errors: %s",
            trigger,
            result.activated,
            result.deactivated,
            result.missed,
            result.cleaned_up,
            result.repaired,
            len(result.errors),
            extra=build_log_context(trigger=trigger),
        )
    return result
