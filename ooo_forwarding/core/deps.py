"""FastAPI dependencies for authentication and database access."""

from typing import Generator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ooo_forwarding.core.security import decode_session_token
from ooo_forwarding.db.session import SessionLocal
from ooo_forwarding.schemas.auth import CurrentUser
from ooo_forwarding.services.mail_rule_gateway import MailRuleGateway, get_mail_rule_gateway


# Cookie and header names
COOKIE_NAME = "portal_session"
CSRF_HEADER = "X-Requested-With"
CSRF_HEADER_VALUE = "XMLHttpRequest"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_gateway() -> MailRuleGateway | None:
    """Mail rule gateway dependency (None when the mail system is not configured)."""
    return get_mail_rule_gateway()


def get_current_user(request: Request) -> CurrentUser:
    """
    Get authenticated user from session cookie.

    The session is issued by the portal sign-in flow; here it is only
    verified. The mailbox a user may schedule forwarding for is their own.

    Raises:
        HTTPException 401: Authentication failed
    """
    token = request.cookies.get(COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = decode_session_token(token)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid session")

    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid session")

    return CurrentUser(email=email, display_name=payload.get("name"))


def require_csrf_header(request: Request) -> None:
    """
    Verify CSRF header on mutations.

    Raises:
        HTTPException 403: Missing or invalid CSRF header
    """
    if request.headers.get(CSRF_HEADER) != CSRF_HEADER_VALUE:
        raise HTTPException(
            status_code=403,
            detail=f"Missing CSRF header. Include '{CSRF_HEADER}: {CSRF_HEADER_VALUE}'"
        )


def get_current_user_email(user: CurrentUser = Depends(get_current_user)) -> str:
    return user.email
