"""Mail rule gateway.

The mail system enforces forwarding through a single, well-known inbox rule
per mailbox. Everything that touches that rule goes through a
``MailRuleGateway``; the schedule store never caches rule state as
authoritative.

The production adapter talks to Microsoft Graph
(``/users/{mailbox}/mailFolders/inbox/messageRules``) with app-level
client-credentials access.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from ooo_forwarding.core.config import settings
from ooo_forwarding.core.structured_logging import mask_email
from ooo_forwarding.services.http_service import request_with_retries

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
TOKEN_REFRESH_MARGIN_SECONDS = 120


class MailRuleGatewayError(Exception):
    """A mail system call failed (network, permission, throttling, ...)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MailRule(BaseModel):
    """Forwarding rule as reported by the mail system."""
    id: str
    display_name: str
    is_enabled: bool
    forward_to: str | None = None
    forward_to_name: str | None = None


class MailRuleGateway(ABC):
    """
    Operations on the named forwarding rule of a mailbox.

    Every call may fail independently and raises ``MailRuleGatewayError``.
    None of them is transactional; create_or_update is safe to retry because
    the rule is addressed by its fixed display name.
    """

    @abstractmethod
    async def get_rule(self, mailbox: str) -> MailRule | None:
        ...

    @abstractmethod
    async def create_or_update_rule(
        self,
        mailbox: str,
        forward_to: str,
        forward_name: str | None,
        enabled: bool = True,
    ) -> MailRule:
        ...

    @abstractmethod
    async def enable(self, mailbox: str, rule_id: str | None) -> None:
        ...

    @abstractmethod
    async def disable(self, mailbox: str, rule_id: str | None) -> None:
        ...

    @abstractmethod
    async def delete(self, mailbox: str, rule_id: str | None) -> bool:
        ...


class GraphMailRuleGateway(MailRuleGateway):
    """Microsoft Graph implementation of the mail rule gateway."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        *,
        api_base: str = "https://graph.microsoft.com/v1.0",
        login_base: str = "https://login.microsoftonline.com",
        rule_name: str = "ProConnect OOO Forwarding",
        timeout: float = 10.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base = api_base.rstrip("/")
        self.login_base = login_base.rstrip("/")
        self.rule_name = rule_name
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _rules_path(self, mailbox: str) -> str:
        return f"/users/{quote(mailbox)}/mailFolders/inbox/messageRules"

    def _rule_path(self, mailbox: str, rule_id: str) -> str:
        return f"{self._rules_path(mailbox)}/{quote(rule_id, safe='')}"

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            url = f"{self.login_base}/{self.tenant_id}/oauth2/v2.0/token"
            try:
                response = await request_with_retries(
                    lambda: client.post(
                        url,
                        data={
                            "grant_type": "client_credentials",
                            "client_id": self.client_id,
                            "client_secret": self.client_secret,
                            "scope": GRAPH_SCOPE,
                        },
                    ),
                    max_attempts=self.max_attempts,
                    base_delay=self.base_delay,
                )
            except httpx.RequestError as e:
                raise MailRuleGatewayError(f"Token request failed: {type(e).__name__}") from e

            if response.status_code != 200:
                raise MailRuleGatewayError(
                    f"Token request failed: {response.status_code}",
                    status_code=response.status_code,
                )

            data = response.json()
            self._token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
            self._token_expires_at = time.monotonic() + max(
                0, expires_in - TOKEN_REFRESH_MARGIN_SECONDS
            )
            return self._token

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        json: dict[str, Any] | None = None,
        allow_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        async with self._client() as client:
            token = await self._access_token(client)
            url = f"{self.api_base}{path}"
            try:
                response = await request_with_retries(
                    lambda: client.request(
                        method,
                        url,
                        headers={
                            "Authorization": f"Bearer {token}",
                            "Content-Type": "application/json",
                        },
                        json=json,
                    ),
                    max_attempts=self.max_attempts,
                    base_delay=self.base_delay,
                )
            except httpx.RequestError as e:
                raise MailRuleGatewayError(f"Graph {action} failed: {type(e).__name__}") from e

        if response.status_code == 401:
            # Force a fresh token on the next call
            self._token = None

        if response.is_success or response.status_code in allow_statuses:
            return response

        logger.error("Graph %s failed: %s %s", action, response.status_code, response.text[:500])
        raise MailRuleGatewayError(
            f"Graph {action} failed: {response.status_code}",
            status_code=response.status_code,
        )

    def _rule_body(self, forward_to: str, forward_name: str | None, enabled: bool) -> dict:
        return {
            "displayName": self.rule_name,
            "sequence": 1,
            "isEnabled": enabled,
            "conditions": {},
            "actions": {
                "forwardTo": [
                    {
                        "emailAddress": {
                            "name": forward_name or forward_to,
                            "address": forward_to,
                        }
                    }
                ],
                "stopProcessingRules": False,
            },
        }

    @staticmethod
    def _parse_rule(data: dict) -> MailRule:
        recipients = (data.get("actions") or {}).get("forwardTo") or []
        address = recipients[0].get("emailAddress", {}) if recipients else {}
        return MailRule(
            id=data["id"],
            display_name=data.get("displayName") or "",
            is_enabled=bool(data.get("isEnabled")),
            forward_to=address.get("address"),
            forward_to_name=address.get("name"),
        )

    async def _resolve_rule_id(self, mailbox: str, rule_id: str | None) -> str | None:
        if rule_id:
            return rule_id
        rule = await self.get_rule(mailbox)
        return rule.id if rule else None

    # ------------------------------------------------------------------
    # Gateway operations
    # ------------------------------------------------------------------

    async def get_rule(self, mailbox: str) -> MailRule | None:
        response = await self._request("GET", self._rules_path(mailbox), "list rules")
        for item in response.json().get("value", []):
            if item.get("displayName") == self.rule_name:
                return self._parse_rule(item)
        return None

    async def create_or_update_rule(
        self,
        mailbox: str,
        forward_to: str,
        forward_name: str | None,
        enabled: bool = True,
    ) -> MailRule:
        body = self._rule_body(forward_to, forward_name, enabled)
        existing = await self.get_rule(mailbox)

        if existing:
            response = await self._request(
                "PATCH", self._rule_path(mailbox, existing.id), "update rule", json=body
            )
            if response.status_code == 204 or not response.content:
                return existing.model_copy(
                    update={
                        "is_enabled": enabled,
                        "forward_to": forward_to,
                        "forward_to_name": forward_name or forward_to,
                    }
                )
        else:
            response = await self._request(
                "POST", self._rules_path(mailbox), "create rule", json=body
            )

        rule = self._parse_rule(response.json())
        logger.info(
            "Forwarding rule %s for %s (enabled=%s)",
            "updated" if existing else "created",
            mask_email(mailbox),
            enabled,
        )
        return rule

    async def enable(self, mailbox: str, rule_id: str | None) -> None:
        resolved = await self._resolve_rule_id(mailbox, rule_id)
        if not resolved:
            raise MailRuleGatewayError("Forwarding rule not found", status_code=404)
        await self._request(
            "PATCH", self._rule_path(mailbox, resolved), "enable rule", json={"isEnabled": True}
        )

    async def disable(self, mailbox: str, rule_id: str | None) -> None:
        resolved = await self._resolve_rule_id(mailbox, rule_id)
        if not resolved:
            return
        # A rule that no longer exists is not forwarding anything
        await self._request(
            "PATCH",
            self._rule_path(mailbox, resolved),
            "disable rule",
            json={"isEnabled": False},
            allow_statuses=(404,),
        )

    async def delete(self, mailbox: str, rule_id: str | None) -> bool:
        try:
            resolved = await self._resolve_rule_id(mailbox, rule_id)
            if not resolved:
                return True
            await self._request(
                "DELETE", self._rule_path(mailbox, resolved), "delete rule", allow_statuses=(404,)
            )
        except MailRuleGatewayError as e:
            logger.warning("Forwarding rule delete failed for %s: %s", mask_email(mailbox), e)
            return False
        return True


_gateway: MailRuleGateway | None = None


def get_mail_rule_gateway() -> MailRuleGateway | None:
    """Process-wide Graph gateway, or None when Graph is not configured."""
    global _gateway
    if not settings.graph_configured:
        return None
    if _gateway is None:
        _gateway = GraphMailRuleGateway(
            settings.AZURE_TENANT_ID,
            settings.AZURE_CLIENT_ID,
            settings.AZURE_CLIENT_SECRET,
            api_base=settings.GRAPH_API_BASE,
            login_base=settings.GRAPH_LOGIN_BASE,
            rule_name=settings.FORWARDING_RULE_NAME,
            timeout=settings.GRAPH_TIMEOUT_SECONDS,
        )
    return _gateway


async def call_with_timeout(awaitable, timeout: float | None = None):
    """Await a gateway call with a bounded timeout; a timeout is a gateway failure."""
    limit = timeout if timeout is not None else settings.GATEWAY_CALL_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(awaitable, timeout=limit)
    except asyncio.TimeoutError as e:
        raise MailRuleGatewayError(f"Mail system call timed out after {limit:g}s") from e
