"""Structured logging helpers (PII-safe)."""

from typing import Any


def mask_email(email: str | None) -> str:
    """Keep enough of a mailbox address to correlate log lines."""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."


def build_log_context(
    *,
    schedule_id: str | None = None,
    user_email: str | None = None,
    status: str | None = None,
    trigger: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict for use as logging ``extra``."""
    context: dict[str, Any] = {}
    if schedule_id:
        context["schedule_id"] = schedule_id
    if user_email:
        context["mailbox"] = mask_email(user_email)
    if status:
        context["schedule_status"] = status
    if trigger:
        context["trigger"] = trigger
    return context
