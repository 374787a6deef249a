"""GitHub webhook and CI report routes."""

import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from src.dependencies import Gateway, get_gateway
from src.errors import GatewayError, RateLimitedError, UpstreamError
from src.handlers.common import generate_request_id
from src.handlers.report_handler import handle_report
from src.handlers.webhook_handler import handle_webhook
from src.schemas.checks import ReadinessResponse
from src.services.rate_limiter import client_identifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["github-webhook"])


async def _run_request(
    request: Request,
    gateway: Gateway,
    handler: Callable[[str], Awaitable[str]],
) -> PlainTextResponse:
    """Shared request lifecycle: id, rate limit, error mapping, timing."""
    request_id = generate_request_id()
    started = time.monotonic()
    try:
        client_id = client_identifier(request.headers)
        if gateway.rate_limiter.is_rate_limited(client_id):
            raise RateLimitedError(f"Rate limit exceeded for IP: {client_id}")
        logger.info(
            "[%s] Incoming request from %s to %s", request_id, client_id, request.url.path
        )
        return PlainTextResponse(await handler(request_id))
    except GatewayError as exc:
        level = logging.ERROR if exc.http_status >= 500 else logging.WARNING
        logger.log(
            level,
            "[%s] %s: %s",
            request_id,
            type(exc).__name__,
            exc,
            exc_info=isinstance(exc, UpstreamError),
        )
        return PlainTextResponse(exc.render(), status_code=exc.http_status, headers=exc.headers())
    except Exception:
        logger.exception("[%s] Unhandled error", request_id)
        return PlainTextResponse("Internal error", status_code=500)
    finally:
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info("[%s] Request completed in %.0fms", request_id, elapsed_ms)


@router.post("/github-webhook", response_class=PlainTextResponse)
async def github_webhook(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
) -> PlainTextResponse:
    """Receive a GitHub delivery; ``check_suite/requested`` creates queued check runs.

    Idempotent: a second delivery for the same head SHA creates nothing.
    """

    async def handler(request_id: str) -> str:
        return await handle_webhook(
            gateway,
            body=await request.body(),
            signature=request.headers.get("x-hub-signature-256", ""),
            event_name=request.headers.get("x-github-event", ""),
            request_id=request_id,
        )

    return await _run_request(request, gateway, handler)


@router.get("/github-webhook/report", response_model=ReadinessResponse)
async def report_ready() -> ReadinessResponse:
    return ReadinessResponse(
        message="GitHub webhook report endpoint is accessible",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.post("/github-webhook/report", response_class=PlainTextResponse)
async def report(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
) -> PlainTextResponse:
    """Update a check run from a CI job, using the global GitHub App."""

    async def handler(request_id: str) -> str:
        return await handle_report(
            gateway,
            authorization=request.headers.get("authorization"),
            body=await request.body(),
            request_id=request_id,
        )

    return await _run_request(request, gateway, handler)


@router.post("/github-webhook/{owner}/report", response_class=PlainTextResponse)
async def owner_report(
    owner: str,
    request: Request,
    gateway: Gateway = Depends(get_gateway),
) -> PlainTextResponse:
    """Update a check run in a supported owner's repository with that owner's app."""

    async def handler(request_id: str) -> str:
        return await handle_report(
            gateway,
            authorization=request.headers.get("authorization"),
            body=await request.body(),
            request_id=request_id,
            owner_name=owner,
        )

    return await _run_request(request, gateway, handler)
