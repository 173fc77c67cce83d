"""
Test configuration and fixtures.

Provides:
- Fresh SQLite schema per test (in-memory, shared connection)
- A fake mail rule gateway that records calls and can be told to fail
- Session token minting for authenticated tests
- HTTPX AsyncClient wired to the app with dependency overrides
"""
import asyncio
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncGenerator, Callable, Generator

# Configure before the app modules read settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "test"
os.environ["INTERNAL_SECRET"] = ""
os.environ["AZURE_TENANT_ID"] = ""
os.environ["AZURE_CLIENT_ID"] = ""
os.environ["AZURE_CLIENT_SECRET"] = ""
os.environ["RECONCILE_LOOP_ENABLED"] = "false"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from ooo_forwarding.core.deps import COOKIE_NAME, get_db, get_gateway
from ooo_forwarding.core.security import create_session_token
from ooo_forwarding.db.base import Base
from ooo_forwarding.db.models import ForwardingSchedule
from ooo_forwarding.db.session import SessionLocal, engine
from ooo_forwarding.main import app
from ooo_forwarding.services.mail_rule_gateway import (
    MailRule,
    MailRuleGateway,
    MailRuleGatewayError,
)


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# Fake mail system
# =============================================================================

class FakeMailRuleGateway(MailRuleGateway):
    """In-memory mail system: one named rule per mailbox."""

    def __init__(self):
        self.rules: dict[str, MailRule] = {}
        self.calls: list[tuple] = []
        self.failures: dict[str, tuple[Exception, set[str] | None]] = {}
        self.hooks: dict[str, Callable[[str], None]] = {}
        self.delay: float = 0
        self._counter = 0

    def fail(self, op: str, mailboxes: set[str] | None = None, error: Exception | None = None):
        self.failures[op] = (
            error or MailRuleGatewayError(f"{op} unavailable", status_code=503),
            mailboxes,
        )

    def recover(self, op: str | None = None):
        if op is None:
            self.failures.clear()
        else:
            self.failures.pop(op, None)

    def ops(self, mailbox: str | None = None) -> list[str]:
        return [c[0] for c in self.calls if mailbox is None or c[1] == mailbox]

    async def _enter(self, op: str, mailbox: str, *args):
        self.calls.append((op, mailbox, *args))
        if op in self.hooks:
            self.hooks[op](mailbox)
        if self.delay:
            await asyncio.sleep(self.delay)
        if op in self.failures:
            error, mailboxes = self.failures[op]
            if mailboxes is None or mailbox in mailboxes:
                raise error

    async def get_rule(self, mailbox):
        await self._enter("get_rule", mailbox)
        return self.rules.get(mailbox)

    async def create_or_update_rule(self, mailbox, forward_to, forward_name, enabled=True):
        await self._enter("create_or_update_rule", mailbox, forward_to, enabled)
        existing = self.rules.get(mailbox)
        if existing:
            rule_id = existing.id
        else:
            self._counter += 1
            rule_id = f"rule-{self._counter}"
        rule = MailRule(
            id=rule_id,
            display_name="ProConnect OOO Forwarding",
            is_enabled=enabled,
            forward_to=forward_to,
            forward_to_name=forward_name,
        )
        self.rules[mailbox] = rule
        return rule

    async def enable(self, mailbox, rule_id):
        await self._enter("enable", mailbox, rule_id)
        rule = self.rules.get(mailbox)
        if not rule:
            raise MailRuleGatewayError("Forwarding rule not found", status_code=404)
        self.rules[mailbox] = rule.model_copy(update={"is_enabled": True})

    async def disable(self, mailbox, rule_id):
        await self._enter("disable", mailbox, rule_id)
        rule = self.rules.get(mailbox)
        if rule:
            self.rules[mailbox] = rule.model_copy(update={"is_enabled": False})

    async def delete(self, mailbox, rule_id):
        await self._enter("delete", mailbox, rule_id)
        self.rules.pop(mailbox, None)
        return True


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Creates the schema, yields a session, drops everything afterwards."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway() -> FakeMailRuleGateway:
    return FakeMailRuleGateway()


@pytest.fixture
def open_count(db: Session):
    """Number of pending/active schedules for a mailbox."""
    def _count(email: str) -> int:
        return (
            db.query(ForwardingSchedule)
            .filter(
                ForwardingSchedule.user_email == email,
                ForwardingSchedule.status.in_(["pending", "active"]),
            )
            .count()
        )
    return _count


# =============================================================================
# Auth Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    email: str
    token: str
    cookie_name: str = COOKIE_NAME


@pytest.fixture(scope="function")
def test_auth() -> TestAuth:
    email = "pat.lee@example.com"
    return TestAuth(email=email, token=create_session_token(email, "Pat Lee"))


# =============================================================================
# Client Fixtures
# =============================================================================

def _override(db: Session, gateway: MailRuleGateway | None):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway


@pytest.fixture(scope="function")
async def client(db: Session, gateway: FakeMailRuleGateway) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient (internal endpoints, auth failures)."""
    _override(db, gateway)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(
    db: Session,
    gateway: FakeMailRuleGateway,
    test_auth: TestAuth,
) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient with session cookie and CSRF header."""
    _override(db, gateway)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={test_auth.cookie_name: test_auth.token},
        headers={"X-Requested-With": "XMLHttpRequest"},  # CSRF header
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def t0() -> datetime:
    """Fixed "now" for service-level tests."""
    return T0
