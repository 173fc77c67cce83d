"""Enum definitions for application constants."""

from enum import Enum


class ForwardingStatus(str, Enum):
    """
    Lifecycle of a forwarding schedule.

        pending → active → expired
        pending → expired          (window elapsed before activation: "missed")
        pending/active → cancelled (superseded or explicitly cancelled)

    expired and cancelled are terminal.
    """
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @classmethod
    def open_values(cls) -> list[str]:
        """Statuses that count toward the one-per-user limit."""
        return [cls.PENDING.value, cls.ACTIVE.value]

    @property
    def is_terminal(self) -> bool:
        return self in (ForwardingStatus.EXPIRED, ForwardingStatus.CANCELLED)


DEFAULT_FORWARDING_STATUS = ForwardingStatus.PENDING
