"""Out-of-office forwarding endpoints for the signed-in user's own mailbox."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ooo_forwarding.core.deps import (
    get_current_user_email,
    get_db,
    get_gateway,
    require_csrf_header,
)
from ooo_forwarding.schemas.forwarding import (
    ForwardingCancelResponse,
    ForwardingScheduleCreate,
    ForwardingScheduleCreateResponse,
    ForwardingScheduleRead,
    ForwardingStatusResponse,
)
from ooo_forwarding.services import forwarding_service
from ooo_forwarding.services.forwarding_service import (
    ScheduleConflictError,
    ScheduleNotFoundError,
    ScheduleStateError,
    ScheduleValidationError,
)
from ooo_forwarding.services.mail_rule_gateway import MailRuleGateway

router = APIRouter(prefix="/ooo", tags=["ooo"])


@router.get("/forwarding", response_model=ForwardingStatusResponse)
async def get_forwarding(
    user_email: str = Depends(get_current_user_email),
    db: Session = Depends(get_db),
    gateway: MailRuleGateway | None = Depends(get_gateway),
):
    """Current schedule plus the rule the mail system is enforcing right now."""
    status = await forwarding_service.get_forwarding_status(db, gateway, user_email)
    schedule = status["schedule"]
    return ForwardingStatusResponse(
        gateway_configured=status["gateway_configured"],
        schedule=ForwardingScheduleRead.model_validate(schedule) if schedule else None,
        rule=status["rule"],
        rule_error=status["rule_error"],
    )


@router.get("/forwarding/history", response_model=list[ForwardingScheduleRead])
def list_forwarding_history(
    limit: int = Query(50, ge=1, le=200),
    user_email: str = Depends(get_current_user_email),
    db: Session = Depends(get_db),
):
    return forwarding_service.list_schedules(db, user_email, limit=limit)


@router.post(
    "/forwarding",
    response_model=ForwardingScheduleCreateResponse,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
async def schedule_forwarding(
    data: ForwardingScheduleCreate,
    user_email: str = Depends(get_current_user_email),
    db: Session = Depends(get_db),
    gateway: MailRuleGateway | None = Depends(get_gateway),
):
    """
    Schedule forwarding for the caller's mailbox.

    An existing pending/active schedule is replaced, not rejected. If the
    mail system cannot be updated right away the schedule is still saved
    and ``warning`` explains that activation will be retried.
    """
    try:
        result = await forwarding_service.create_schedule(
            db,
            gateway,
            user_email=user_email,
            forward_to_email=data.forward_to_email,
            forward_to_name=data.forward_to_name,
            starts_at=data.starts_at,
            ends_at=data.ends_at,
        )
    except ScheduleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ScheduleConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ForwardingScheduleCreateResponse(
        schedule=ForwardingScheduleRead.model_validate(result.schedule),
        warning=result.warning,
    )


@router.delete(
    "/forwarding",
    response_model=ForwardingCancelResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def cancel_current_forwarding(
    user_email: str = Depends(get_current_user_email),
    db: Session = Depends(get_db),
    gateway: MailRuleGateway | None = Depends(get_gateway),
):
    """Cancel my current schedule."""
    try:
        result = await forwarding_service.cancel_current_schedule(db, gateway, user_email)
    except ScheduleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ScheduleStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ForwardingCancelResponse(
        schedule=ForwardingScheduleRead.model_validate(result.schedule),
        rule_disabled=result.rule_disabled,
    )


@router.delete(
    "/forwarding/{schedule_id}",
    response_model=ForwardingCancelResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def cancel_forwarding(
    schedule_id: UUID,
    user_email: str = Depends(get_current_user_email),
    db: Session = Depends(get_db),
    gateway: MailRuleGateway | None = Depends(get_gateway),
):
    try:
        result = await forwarding_service.cancel_schedule(
            db, gateway, schedule_id, user_email=user_email
        )
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail="Forwarding schedule not found")
    except ScheduleStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ForwardingCancelResponse(
        schedule=ForwardingScheduleRead.model_validate(result.schedule),
        rule_disabled=result.rule_disabled,
    )
