"""Tests for the GitHub webhook endpoint."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from src.config import OwnerCredentials, OwnerRegistry, Settings
from src.dependencies import Gateway
from src.errors import GitHubError
from src.handlers.webhook_handler import handle_webhook
from src.main import create_app
from src.services.circuit_breaker import CircuitBreaker
from src.services.rate_limiter import RateLimiter

SHA = "fedcba9876543210fedcba9876543210fedcba98"
DEVS_SECRET = "devs-webhook-secret"
CHIE_SECRET = "chie-webhook-secret"
CHECK_NAMES = ["✅ ci-checks", "playwright-tests (chromium)"]

SAMPLE_EVENT = {
    "action": "requested",
    "check_suite": {"head_sha": SHA},
    "repository": {"name": "VirtualStitch", "owner": {"login": "303Devs"}},
    "installation": {"id": 98765},
    "sender": {"login": "octocat"},
}


def _owners() -> OwnerRegistry:
    return OwnerRegistry(
        owners={
            "303devs": OwnerCredentials(
                name="303devs",
                repository="303devs/VirtualStitch",
                app_id="111",
                private_key="devs-key",
                webhook_secret=DEVS_SECRET,
            ),
            "chielephant": OwnerCredentials(
                name="chielephant",
                repository="Chielephant/storefront",
                app_id="222",
                private_key="chie-key",
                webhook_secret=CHIE_SECRET,
                aliases=("chie",),
            ),
        }
    )


def _github():
    checks = AsyncMock()
    checks.create_check_run.return_value = {"id": 1}
    app_client = AsyncMock()
    app_client.get_installation_id.return_value = 555
    app_client.installation.return_value = checks
    return app_client, checks


def _gateway(dedup_store, app_client) -> Gateway:
    return Gateway(
        settings=Settings(check_names=CHECK_NAMES),
        owners=_owners(),
        rate_limiter=RateLimiter(),
        circuit_breaker=CircuitBreaker(),
        dedup_store=dedup_store,
        github_factory=Mock(return_value=app_client),
    )


@pytest.fixture
def deliver(sign):
    async def _deliver(gateway: Gateway, payload, event="check_suite", secret=DEVS_SECRET):
        body = json.dumps(payload).encode()
        headers = {"content-type": "application/json"}
        if event is not None:
            headers["x-github-event"] = event
        if secret is not None:
            headers["x-hub-signature-256"] = sign(body, secret)
        transport = ASGITransport(app=create_app(gateway))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            return await client.post("/api/github-webhook", content=body, headers=headers)

    return _deliver


async def test_check_suite_requested_creates_all_check_runs(dedup_store, deliver):
    app_client, checks = _github()
    gateway = _gateway(dedup_store, app_client)

    resp = await deliver(gateway, SAMPLE_EVENT)

    assert resp.status_code == 200
    assert resp.text == "✅ All check runs created"
    gateway.github_factory.assert_called_once_with("111", "devs-key")
    app_client.installation.assert_awaited_once_with(98765)
    app_client.get_installation_id.assert_not_awaited()

    created = [c.kwargs["name"] for c in checks.create_check_run.await_args_list]
    assert created == CHECK_NAMES
    first = checks.create_check_run.await_args_list[0]
    assert first.args == ("303Devs", "VirtualStitch")
    assert first.kwargs["head_sha"] == SHA
    assert first.kwargs["status"] == "queued"
    assert first.kwargs["output"] == {
        "title": "✅ ci-checks - Queued",
        "summary": "✅ ci-checks has been queued and will start shortly.",
    }
    assert f"checks-created:{SHA}" in dedup_store.values


async def test_duplicate_delivery_creates_nothing(dedup_store, deliver):
    app_client, checks = _github()
    gateway = _gateway(dedup_store, app_client)

    first = await deliver(gateway, SAMPLE_EVENT)
    second = await deliver(gateway, SAMPLE_EVENT)

    assert first.text == "✅ All check runs created"
    assert second.status_code == 200
    assert second.text == "⏭️ Checks already created for this SHA."
    assert checks.create_check_run.await_count == len(CHECK_NAMES)


async def test_other_actions_are_ignored(dedup_store, deliver):
    app_client, checks = _github()
    gateway = _gateway(dedup_store, app_client)

    resp = await deliver(gateway, {**SAMPLE_EVENT, "action": "completed"})

    assert resp.status_code == 200
    assert resp.text == "Event ignored"
    assert dedup_store.calls == []
    gateway.github_factory.assert_not_called()


async def test_other_events_are_ignored(dedup_store, deliver):
    app_client, _ = _github()
    gateway = _gateway(dedup_store, app_client)

    resp = await deliver(gateway, SAMPLE_EVENT, event="push")
    missing = await deliver(gateway, SAMPLE_EVENT, event=None)

    assert resp.text == "Event ignored"
    assert missing.text == "Event ignored"
    assert dedup_store.calls == []


async def test_invalid_signature_rejected(dedup_store, deliver):
    app_client, _ = _github()
    gateway = _gateway(dedup_store, app_client)

    wrong = await deliver(gateway, SAMPLE_EVENT, secret="not-configured")
    missing = await deliver(gateway, SAMPLE_EVENT, secret=None)

    for resp in (wrong, missing):
        assert resp.status_code == 401
        assert resp.text == "Invalid signature"
    assert dedup_store.calls == []


async def test_verifier_exception_is_invalid_signature(dedup_store, deliver):
    app_client, _ = _github()
    gateway = _gateway(dedup_store, app_client)

    with patch(
        "src.handlers.webhook_handler.verify_signature",
        side_effect=RuntimeError("verifier crashed"),
    ):
        resp = await deliver(gateway, SAMPLE_EVENT)

    assert resp.status_code == 401
    assert resp.text == "Invalid signature"


async def test_signature_from_another_owner_is_rejected(dedup_store, deliver):
    app_client, _ = _github()
    gateway = _gateway(dedup_store, app_client)

    resp = await deliver(gateway, SAMPLE_EVENT, secret=CHIE_SECRET)

    assert resp.status_code == 401
    gateway.github_factory.assert_not_called()


async def test_owner_alias_matches_case_insensitively(dedup_store, deliver):
    app_client, _ = _github()
    gateway = _gateway(dedup_store, app_client)
    event = {**SAMPLE_EVENT, "repository": {"name": "storefront", "owner": {"login": "CHIE"}}}

    resp = await deliver(gateway, event, secret=CHIE_SECRET)

    assert resp.status_code == 200
    gateway.github_factory.assert_called_once_with("222", "chie-key")


async def test_missing_payload_data(dedup_store, deliver):
    app_client, _ = _github()
    gateway = _gateway(dedup_store, app_client)

    no_sha = {**SAMPLE_EVENT, "check_suite": {}}
    no_repo = {key: value for key, value in SAMPLE_EVENT.items() if key != "repository"}

    for payload in (no_sha, no_repo):
        resp = await deliver(gateway, payload)
        assert resp.status_code == 400
        assert resp.text == "Missing required payload data"
    assert dedup_store.calls == []


async def test_unsupported_owner(dedup_store, deliver):
    app_client, _ = _github()
    gateway = _gateway(dedup_store, app_client)
    event = {**SAMPLE_EVENT, "repository": {"name": "thing", "owner": {"login": "acme"}}}

    resp = await deliver(gateway, event)

    assert resp.status_code == 400
    assert resp.text == "Unsupported repository owner."


async def test_installation_resolved_when_payload_has_none(dedup_store, deliver):
    app_client, _ = _github()
    gateway = _gateway(dedup_store, app_client)
    event = {key: value for key, value in SAMPLE_EVENT.items() if key != "installation"}

    resp = await deliver(gateway, event)

    assert resp.status_code == 200
    app_client.get_installation_id.assert_awaited_once_with("303Devs", "VirtualStitch")
    app_client.installation.assert_awaited_once_with(555)


async def test_github_failure_is_internal_error_and_allows_redelivery(dedup_store, deliver):
    app_client, checks = _github()
    checks.create_check_run.side_effect = GitHubError("Create check run failed (403): Forbidden", 403)
    gateway = _gateway(dedup_store, app_client)

    resp = await deliver(gateway, SAMPLE_EVENT)

    assert resp.status_code == 500
    assert resp.text == "Internal error"
    assert f"checks-created:{SHA}" not in dedup_store.values

    checks.create_check_run.side_effect = None
    retry = await deliver(gateway, SAMPLE_EVENT)
    assert retry.text == "✅ All check runs created"


async def test_dedup_store_outage_is_internal_error(unavailable_dedup_store, deliver):
    app_client, checks = _github()

    resp = await deliver(_gateway(unavailable_dedup_store, app_client), SAMPLE_EVENT)

    assert resp.status_code == 500
    assert resp.text == "Internal error"
    checks.create_check_run.assert_not_awaited()


async def test_failed_create_keeps_claim_until_other_creates_finish(dedup_store, deliver):
    app_client, checks = _github()
    gateway = _gateway(dedup_store, app_client)
    gateway.settings = Settings(check_names=["a", "b", "c"])
    key = f"checks-created:{SHA}"
    finished = []

    async def create(owner, repo, *, name, **kwargs):
        if name == "a":
            raise GitHubError("Create check run failed (422): Unprocessable", 422)
        await asyncio.sleep(0.05)
        finished.append((name, key in dedup_store.values))
        return {"id": 1}

    checks.create_check_run.side_effect = create

    resp = await deliver(gateway, SAMPLE_EVENT)

    assert resp.status_code == 500
    assert sorted(finished) == [("b", True), ("c", True)]
    assert key not in dedup_store.values
    assert [op for op, _ in dedup_store.calls] == ["claim", "delete"]


async def test_cancelled_create_releases_claim(dedup_store, sign):
    app_client, checks = _github()
    checks.create_check_run.side_effect = asyncio.CancelledError()
    gateway = _gateway(dedup_store, app_client)
    body = json.dumps(SAMPLE_EVENT).encode()

    with pytest.raises(asyncio.CancelledError):
        await handle_webhook(
            gateway,
            body=body,
            signature=sign(body, DEVS_SECRET),
            event_name="check_suite",
            request_id="test",
        )

    assert f"checks-created:{SHA}" not in dedup_store.values
