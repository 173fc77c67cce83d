"""Tests for the Microsoft Graph mail rule gateway (mocked transport)."""

import json

import httpx
import pytest

from ooo_forwarding.services.mail_rule_gateway import (
    GraphMailRuleGateway,
    MailRuleGatewayError,
    get_mail_rule_gateway,
)

MAILBOX = "pat.lee@example.com"
RULE_NAME = "ProConnect OOO Forwarding"


class FakeGraph:
    """Just enough of Graph's token and messageRules endpoints."""

    def __init__(self):
        self.rules: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.token_status = 200
        self.status_override: dict[str, int] = {}
        self._next = 0

    def add_rule(self, display_name=RULE_NAME, address="old@example.com", enabled=True) -> str:
        self._next += 1
        rule_id = f"rule-{self._next}"
        self.rules[rule_id] = {
            "id": rule_id,
            "displayName": display_name,
            "isEnabled": enabled,
            "actions": {"forwardTo": [{"emailAddress": {"name": address, "address": address}}]},
        }
        return rule_id

    def api_requests(self) -> list[tuple[str, str]]:
        return [
            (r.method, r.url.path)
            for r in self.requests
            if not r.url.path.endswith("/token")
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/oauth2/v2.0/token"):
            self.token_calls += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(
                200, json={"access_token": f"token-{self.token_calls}", "expires_in": 3600}
            )

        if request.method in self.status_override:
            return httpx.Response(self.status_override[request.method])

        if path.endswith("/messageRules"):
            if request.method == "GET":
                return httpx.Response(200, json={"value": list(self.rules.values())})
            if request.method == "POST":
                body = json.loads(request.content)
                self._next += 1
                rule = {**body, "id": f"rule-{self._next}"}
                self.rules[rule["id"]] = rule
                return httpx.Response(201, json=rule)

        rule_id = path.rsplit("/", 1)[-1]
        rule = self.rules.get(rule_id)
        if rule is None:
            return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound"}})
        if request.method == "PATCH":
            rule.update(json.loads(request.content))
            return httpx.Response(200, json=rule)
        if request.method == "DELETE":
            del self.rules[rule_id]
            return httpx.Response(204)
        return httpx.Response(405)


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def graph_gateway(graph: FakeGraph) -> GraphMailRuleGateway:
    return GraphMailRuleGateway(
        "tenant-1",
        "client-1",
        "secret-1",
        api_base="https://graph.test/v1.0",
        login_base="https://login.test",
        rule_name=RULE_NAME,
        max_attempts=1,
        base_delay=0,
        transport=httpx.MockTransport(graph),
    )


def test_gateway_is_not_built_without_credentials():
    assert get_mail_rule_gateway() is None


@pytest.mark.asyncio
async def test_create_rule_posts_forwarding_rule(graph, graph_gateway):
    rule = await graph_gateway.create_or_update_rule(MAILBOX, "sam@example.com", "Sam Backup")

    assert rule.id == "rule-1"
    assert rule.is_enabled is True
    assert rule.forward_to == "sam@example.com"
    assert graph.api_requests() == [
        ("GET", f"/v1.0/users/{MAILBOX}/mailFolders/inbox/messageRules"),
        ("POST", f"/v1.0/users/{MAILBOX}/mailFolders/inbox/messageRules"),
    ]

    post = graph.requests[-1]
    assert post.headers["Authorization"] == "Bearer token-1"
    assert json.loads(post.content) == {
        "displayName": RULE_NAME,
        "sequence": 1,
        "isEnabled": True,
        "conditions": {},
        "actions": {
            "forwardTo": [{"emailAddress": {"name": "Sam Backup", "address": "sam@example.com"}}],
            "stopProcessingRules": False,
        },
    }


@pytest.mark.asyncio
async def test_create_or_update_patches_existing_named_rule(graph, graph_gateway):
    graph.add_rule(display_name="Newsletters to folder")
    existing_id = graph.add_rule(enabled=False)

    rule = await graph_gateway.create_or_update_rule(MAILBOX, "sam@example.com", None)

    assert rule.id == existing_id
    assert rule.is_enabled is True
    assert rule.forward_to == "sam@example.com"
    assert [m for m, _ in graph.api_requests()] == ["GET", "PATCH"]
    assert len(graph.rules) == 2


@pytest.mark.asyncio
async def test_access_token_is_cached_between_calls(graph, graph_gateway):
    await graph_gateway.get_rule(MAILBOX)
    await graph_gateway.get_rule(MAILBOX)

    assert graph.token_calls == 1
    token_request = graph.requests[0]
    assert token_request.url.path == "/tenant-1/oauth2/v2.0/token"
    assert b"grant_type=client_credentials" in token_request.content


@pytest.mark.asyncio
async def test_unauthorized_response_forces_new_token(graph, graph_gateway):
    graph.status_override["GET"] = 401

    with pytest.raises(MailRuleGatewayError) as exc_info:
        await graph_gateway.get_rule(MAILBOX)
    assert exc_info.value.status_code == 401

    graph.status_override.clear()
    await graph_gateway.get_rule(MAILBOX)

    assert graph.token_calls == 2


@pytest.mark.asyncio
async def test_token_failure_is_a_gateway_error(graph, graph_gateway):
    graph.token_status = 400

    with pytest.raises(MailRuleGatewayError) as exc_info:
        await graph_gateway.get_rule(MAILBOX)

    assert exc_info.value.status_code == 400
    assert graph.api_requests() == []


@pytest.mark.asyncio
async def test_get_rule_only_matches_forwarding_rule_name(graph, graph_gateway):
    graph.add_rule(display_name="Newsletters to folder")

    assert await graph_gateway.get_rule(MAILBOX) is None

    rule_id = graph.add_rule(address="sam@example.com")
    rule = await graph_gateway.get_rule(MAILBOX)

    assert rule.id == rule_id
    assert rule.display_name == RULE_NAME
    assert rule.forward_to == "sam@example.com"


@pytest.mark.asyncio
async def test_get_rule_failure_raises_with_status(graph, graph_gateway):
    graph.status_override["GET"] = 403

    with pytest.raises(MailRuleGatewayError) as exc_info:
        await graph_gateway.get_rule(MAILBOX)

    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_disable_and_enable_patch_is_enabled(graph, graph_gateway):
    rule_id = graph.add_rule()

    await graph_gateway.disable(MAILBOX, rule_id)
    assert graph.rules[rule_id]["isEnabled"] is False

    await graph_gateway.enable(MAILBOX, None)
    assert graph.rules[rule_id]["isEnabled"] is True


@pytest.mark.asyncio
async def test_disable_missing_rule_is_not_an_error(graph, graph_gateway):
    await graph_gateway.disable(MAILBOX, "rule-gone")
    await graph_gateway.disable(MAILBOX, None)

    assert [m for m, _ in graph.api_requests()] == ["PATCH", "GET"]


@pytest.mark.asyncio
async def test_enable_without_rule_raises_not_found(graph_gateway):
    with pytest.raises(MailRuleGatewayError) as exc_info:
        await graph_gateway.enable(MAILBOX, None)

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_delete_reports_success_and_failure(graph, graph_gateway):
    rule_id = graph.add_rule()

    assert await graph_gateway.delete(MAILBOX, rule_id) is True
    assert graph.rules == {}
    # Already gone
    assert await graph_gateway.delete(MAILBOX, rule_id) is True

    graph.add_rule()
    graph.status_override["DELETE"] = 500
    assert await graph_gateway.delete(MAILBOX, None) is False
