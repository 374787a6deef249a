"""Composition root: the per-process objects every request shares."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from fastapi import Request

from src.clients.dedup_store import DedupStore, SqlDedupStore, UpstashDedupStore
from src.clients.github_client import GitHubAppClient
from src.config import OwnerRegistry, Settings, load_owner_registry
from src.database import async_session
from src.services.circuit_breaker import CircuitBreaker
from src.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

GitHubClientFactory = Callable[[str, str], GitHubAppClient]


@dataclass
class Gateway:
    """Long-lived collaborators, created once and passed to every handler.

    Rate limiter and breaker state are per process; replicas do not share it.
    """

    settings: Settings
    owners: OwnerRegistry
    rate_limiter: RateLimiter
    circuit_breaker: CircuitBreaker
    dedup_store: DedupStore
    github_factory: GitHubClientFactory | None = None
    _github_clients: dict[str, GitHubAppClient] = field(default_factory=dict, repr=False)

    def github(self, app_id: str, private_key: str) -> GitHubAppClient:
        """One client per app id, so cached installation tokens are reused."""
        if self.github_factory is not None:
            return self.github_factory(app_id, private_key)
        client = self._github_clients.get(app_id)
        if client is None:
            client = GitHubAppClient(app_id, private_key, base_url=self.settings.github_api_url)
            self._github_clients[app_id] = client
        return client

    async def close(self) -> None:
        for client in self._github_clients.values():
            await client.close()
        self._github_clients.clear()
        await self.dedup_store.close()


def build_dedup_store(settings: Settings) -> DedupStore:
    if settings.upstash_redis_rest_url:
        logger.info("Using Upstash dedup store")
        return UpstashDedupStore(settings.upstash_redis_rest_url, settings.upstash_redis_rest_token)
    logger.info("Upstash not configured, using SQL dedup store")
    return SqlDedupStore(async_session)


def build_gateway(settings: Settings) -> Gateway:
    """Wire the gateway from settings. Raises ConfigurationError on bad owner config."""
    owners = load_owner_registry(settings.supported_owners)
    logger.info("Loaded %d supported repository owners", len(owners))
    return Gateway(
        settings=settings,
        owners=owners,
        rate_limiter=RateLimiter(
            window_ms=settings.rate_limit_window_ms,
            max_requests=settings.rate_limit_max_requests,
        ),
        circuit_breaker=CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            timeout_ms=settings.circuit_timeout_ms,
        ),
        dedup_store=build_dedup_store(settings),
    )


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway
