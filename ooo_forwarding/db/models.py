"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Index,
    String,
    Text,
    Uuid,
    false,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ooo_forwarding.db.base import Base
from ooo_forwarding.db.enums import DEFAULT_FORWARDING_STATUS, ForwardingStatus

_OPEN_STATUS_FILTER = "status IN ('pending', 'active')"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ForwardingSchedule(Base):
    """
    Declared forwarding intent: forward user_email → forward_to_email
    during [starts_at, ends_at).

    The mail system's rule is the enforced state; this row is the source
    of truth for intent. Rows are never deleted, terminal rows are history.
    """

    __tablename__ = "forwarding_schedules"
    __table_args__ = (
        Index("idx_forwarding_schedules_status_starts", "status", "starts_at"),
        Index("idx_forwarding_schedules_status_ends", "status", "ends_at"),
        Index("idx_forwarding_schedules_user_status", "user_email", "status"),
        # At most one pending/active schedule per mailbox
        Index(
            "uq_forwarding_schedules_user_open",
            "user_email",
            unique=True,
            postgresql_where=text(_OPEN_STATUS_FILTER),
            sqlite_where=text(_OPEN_STATUS_FILTER),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    forward_to_email: Mapped[str] = mapped_column(String(255), nullable=False)
    forward_to_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    starts_at: Mapped[datetime] = mapped_column(nullable=False)
    ends_at: Mapped[datetime] = mapped_column(nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_FORWARDING_STATUS.value,
        server_default=text(f"'{DEFAULT_FORWARDING_STATUS.value}'"),
        nullable=False,
    )
    external_rule_id: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Set when a cancel could not confirm the external rule was disabled
    rule_cleanup_pending: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), onupdate=_utcnow, nullable=False
    )

    @property
    def status_enum(self) -> ForwardingStatus:
        return ForwardingStatus(self.status)

    def __repr__(self) -> str:
        return f"<ForwardingSchedule {self.id} {self.status}>"
