"""Authentication-related Pydantic schemas."""

from pydantic import BaseModel


class CurrentUser(BaseModel):
    """Identity of the authenticated caller, taken from the session token."""
    email: str
    display_name: str | None = None
