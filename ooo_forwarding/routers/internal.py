"""
Internal endpoints for scheduled/cron operations.

Protected by INTERNAL_SECRET, sent as ``Authorization: Bearer <secret>``,
``X-Internal-Secret`` header or ``?secret=`` query parameter.
The in-process interval loop calls the same reconciliation pass; these
endpoints let an external cron (or an operator) trigger it on demand.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ooo_forwarding.core.config import settings
from ooo_forwarding.core.deps import get_db, get_gateway
from ooo_forwarding.core.security import verify_secret
from ooo_forwarding.schemas.forwarding import ReconcileResponse
from ooo_forwarding.services.mail_rule_gateway import MailRuleGateway
from ooo_forwarding.services.reconciler_service import run_reconciliation


router = APIRouter(prefix="/internal/scheduled", tags=["internal"])


def verify_internal_access(request: Request) -> None:
    """
    Check the shared secret.

    Without a configured secret, access is only allowed when ENV=dev is
    set explicitly.
    """
    expected = settings.INTERNAL_SECRET
    if not expected:
        if settings.internal_dev_bypass:
            return
        raise HTTPException(status_code=401, detail="Unauthorized")

    candidates = [
        request.headers.get("x-internal-secret"),
        request.query_params.get("secret"),
    ]
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer":
        candidates.append(token.strip())

    if any(verify_secret(candidate, expected) for candidate in candidates):
        return
    raise HTTPException(status_code=401, detail="Unauthorized")


@router.api_route(
    "/forwarding-reconcile",
    methods=["GET", "POST"],
    response_model=ReconcileResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(verify_internal_access)],
)
async def reconcile_forwarding(
    db: Session = Depends(get_db),
    gateway: MailRuleGateway | None = Depends(get_gateway),
):
    """
    Run one forwarding reconciliation pass.

    - Activates pending schedules whose window has started
    - Expires pending schedules whose window already elapsed (missed)
    - Deactivates active schedules whose window has ended
    - Re-asserts drifted rules of active schedules inside their window
    """
    result = await run_reconciliation(db, gateway, trigger="endpoint")
    return ReconcileResponse(
        activated=result.activated,
        deactivated=result.deactivated,
        missed=result.missed,
        cleaned_up=result.cleaned_up,
        repaired=result.repaired,
        errors=result.errors or None,
    )
