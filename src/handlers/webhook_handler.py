"""Creates queued check runs when GitHub requests a check suite.

Only ``check_suite`` deliveries with ``action: requested`` do anything; every
other event GitHub sends is acknowledged and ignored. Check runs are created
at most once per head SHA.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError as PydanticValidationError

from src.config import OwnerCredentials, OwnerRegistry
from src.dependencies import Gateway
from src.errors import PayloadError, SignatureError, UnsupportedOwnerError
from src.handlers.common import parse_json, release_claim
from src.schemas.checks import CheckSuiteEvent, checks_created_key
from src.templates.check_templates import build_queued_output
from src.validation import verify_signature

logger = logging.getLogger(__name__)

EVENT_IGNORED = "Event ignored"
CHECK_RUNS_CREATED = "✅ All check runs created"
CHECKS_ALREADY_CREATED = "⏭️ Checks already created for this SHA."


def verified_owners(
    owners: OwnerRegistry,
    body: bytes,
    signature: str,
    request_id: str,
) -> set[str]:
    """Names of the owners whose webhook secret produced *signature*.

    A verifier that raises counts as a mismatch, never as a server error.
    """
    matched: set[str] = set()
    for owner, secret in owners.webhook_secrets():
        try:
            if verify_signature(secret, body, signature):
                matched.add(owner.name.lower())
        except Exception as exc:
            logger.warning("[%s] Signature verification failed: %s", request_id, exc)
    return matched


def _parse_event(raw: object) -> CheckSuiteEvent:
    try:
        event = CheckSuiteEvent.model_validate(raw)
    except PydanticValidationError as exc:
        raise PayloadError(f"Malformed check_suite payload: {exc.error_count()} errors") from exc
    if not (event.head_sha and event.owner_login and event.repository.name):
        raise PayloadError("check_suite.head_sha or repository identity missing")
    return event


async def _create_check_runs(
    gateway: Gateway,
    owner: OwnerCredentials,
    event: CheckSuiteEvent,
    request_id: str,
) -> bool:
    """The circuit-guarded unit. Returns True when runs already existed."""
    sha = event.head_sha
    key = checks_created_key(sha)
    store = gateway.dedup_store
    if not await store.claim(key, ex=gateway.settings.checks_created_ttl_seconds):
        logger.info("[%s] Checks already created for SHA: %s", request_id, sha)
        return True

    repo_owner, repo = event.owner_login, event.repository.name
    check_names = gateway.settings.check_names
    created = False
    try:
        github = gateway.github(owner.app_id, owner.private_key)
        installation_id = event.installation_id or await github.get_installation_id(repo_owner, repo)
        checks = await github.installation(installation_id)
        logger.info("[%s] Creating %d check runs for SHA: %s", request_id, len(check_names), sha)
        # every create settles before the claim can be released
        results = await asyncio.gather(
            *(
                checks.create_check_run(
                    repo_owner,
                    repo,
                    name=name,
                    head_sha=sha,
                    status="queued",
                    output=build_queued_output(name),
                )
                for name in check_names
            ),
            return_exceptions=True,
        )
        failures = []
        for name, result in zip(check_names, results):
            if isinstance(result, BaseException):
                logger.error("[%s] Failed to create check run %s: %s", request_id, name, result)
                failures.append(result)
        if failures:
            raise failures[0]
        created = True
    finally:
        if not created:
            await release_claim(store, key, request_id)
    return False


async def handle_webhook(
    gateway: Gateway,
    *,
    body: bytes,
    signature: str,
    event_name: str,
    request_id: str,
) -> str:
    """Process one webhook delivery and return the 200 response text."""
    logger.info("[%s] Processing webhook event: %s", request_id, event_name)

    matched = verified_owners(gateway.owners, body, signature, request_id)
    if not matched:
        raise SignatureError("No configured webhook secret matches the delivery")

    raw = parse_json(body)
    if not isinstance(raw, dict):
        raise PayloadError("Webhook body is not a JSON object")
    action = raw.get("action")
    if event_name != "check_suite" or action != "requested":
        logger.info("[%s] Event ignored: %s/%s", request_id, event_name, action)
        return EVENT_IGNORED

    event = _parse_event(raw)

    owner = gateway.owners.resolve(event.owner_login)
    if owner is None:
        raise UnsupportedOwnerError(f"Unsupported repository owner: {event.owner_login}")
    if owner.name.lower() not in matched:
        raise SignatureError(f"Delivery was not signed with the secret for {owner.name}")

    already_created = await gateway.circuit_breaker.execute(
        lambda: _create_check_runs(gateway, owner, event, request_id)
    )
    if already_created:
        return CHECKS_ALREADY_CREATED

    logger.info("[%s] All check runs created successfully", request_id)
    return CHECK_RUNS_CREATED
