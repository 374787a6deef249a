"""Applies CI status reports to GitHub check runs.

1. Authenticate the internal caller (bearer token).
2. Validate, then sanitize, the report.
3. Inside the circuit breaker: resolve the installation, find the check run
   by SHA and name, claim the dedup key, update the run.

Duplicate reports (same check run, status and conclusion within the TTL)
are acknowledged without touching GitHub.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

from src.config import split_repository
from src.dependencies import Gateway
from src.errors import AuthenticationError, ConfigurationError, UnsupportedOwnerError
from src.handlers.common import parse_json, release_claim
from src.schemas.checks import CheckRunKey, ReportPayload
from src.templates.check_templates import build_update_fields
from src.validation import sanitize_report_payload, validate_report_payload

logger = logging.getLogger(__name__)

CHECK_RUN_UPDATED = "✅ Check run updated"
DUPLICATE_UPDATE_SKIPPED = "⏭️ Duplicate check update skipped."

_BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class AppTarget:
    """Which GitHub App and repository a report applies to."""

    app_id: str
    private_key: str
    owner: str
    repo: str


def authenticate(expected_secret: str, authorization: str | None, request_id: str) -> None:
    if not expected_secret:
        logger.error("[%s] Missing INTERNAL_APP_SECRET environment variable", request_id)
        raise ConfigurationError("INTERNAL_APP_SECRET is not set")
    if not authorization or not authorization.startswith(_BEARER_PREFIX):
        raise AuthenticationError("Missing or invalid authorization header")
    provided = authorization[len(_BEARER_PREFIX):]
    if not hmac.compare_digest(provided.encode(), expected_secret.encode()):
        raise AuthenticationError("Invalid internal app secret")


def resolve_target(gateway: Gateway, owner_name: str | None) -> AppTarget:
    """Credentials for the global app, or for a supported owner's own app."""
    if owner_name is not None:
        owner = gateway.owners.resolve(owner_name)
        if owner is None:
            raise UnsupportedOwnerError(f"Unsupported owner in route: {owner_name}")
        repo_owner, repo = split_repository(owner.repository)
        return AppTarget(owner.app_id, owner.private_key, repo_owner, repo)

    settings = gateway.settings
    if not settings.gh_app_id or not settings.gh_app_private_key:
        raise ConfigurationError("Missing GitHub App credentials (GH_APP_ID / GH_APP_PRIVATE_KEY)")
    if not settings.gh_repository:
        raise ConfigurationError("Missing GH_REPOSITORY environment variable")
    repo_owner, repo = split_repository(settings.gh_repository)
    return AppTarget(settings.gh_app_id, settings.private_key, repo_owner, repo)


async def _apply_report(
    gateway: Gateway,
    target: AppTarget,
    payload: ReportPayload,
    request_id: str,
) -> bool:
    """The circuit-guarded unit. Returns True when the update was a duplicate."""
    github = gateway.github(target.app_id, target.private_key)
    installation_id = await github.get_installation_id(target.owner, target.repo)
    checks = await github.installation(installation_id)
    check_run = await checks.find_check_run(target.owner, target.repo, payload.sha, payload.name)

    key = CheckRunKey(
        check_run_id=check_run["id"],
        status=payload.status,
        conclusion=payload.conclusion,
    ).dedup_key
    store = gateway.dedup_store
    if not await store.claim(key, ex=gateway.settings.check_update_ttl_seconds):
        logger.info("[%s] Duplicate check update skipped for %s", request_id, payload.name)
        return True

    updated = False
    try:
        await checks.update_check_run(
            target.owner,
            target.repo,
            check_run["id"],
            **build_update_fields(payload),
        )
        updated = True
    finally:
        if not updated:
            await release_claim(store, key, request_id)
    return False


async def handle_report(
    gateway: Gateway,
    *,
    authorization: str | None,
    body: bytes,
    request_id: str,
    owner_name: str | None = None,
) -> str:
    """Process one report request and return the 200 response text.

    Failures surface as ``GatewayError`` subclasses for the route to map.
    """
    authenticate(gateway.settings.internal_app_secret, authorization, request_id)

    payload = sanitize_report_payload(validate_report_payload(parse_json(body)))
    logger.info(
        "[%s] Processing check update for %s (%s)", request_id, payload.name, payload.status
    )

    target = resolve_target(gateway, owner_name)

    duplicate = await gateway.circuit_breaker.execute(
        lambda: _apply_report(gateway, target, payload, request_id)
    )
    if duplicate:
        return DUPLICATE_UPDATE_SKIPPED

    logger.info("[%s] Check run updated successfully", request_id)
    return CHECK_RUN_UPDATED
