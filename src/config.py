"""Configuration for checks-gateway."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

from src.errors import ConfigurationError

DEFAULT_CHECK_NAMES = [
    "✅ ci-checks",
    "playwright-tests (chromium)",
    "playwright-tests (firefox)",
    "playwright-tests (webkit)",
    "playwright-tests (mobile-chrome)",
    "playwright-tests (mobile-safari)",
]


def unescape_private_key(value: str) -> str:
    """PEM keys stored in env vars usually carry literal ``\\n`` sequences."""
    return value.replace("\\n", "\n")


def _parse_name_list(value: object) -> object:
    if value in (None, ""):
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            return json.loads(text)
        return [item.strip() for item in text.split(",") if item.strip()]
    raise TypeError("expected a list or a comma separated string")


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./checks-gateway.db"
    api_prefix: str = "/api"
    debug: bool = False

    # Report ingress (single repository, global GitHub App)
    internal_app_secret: str = ""
    gh_app_id: str = ""
    gh_app_private_key: str = ""
    gh_repository: str = ""

    # Dedup store; the SQL table is used when Upstash is not configured
    upstash_redis_rest_url: str = ""
    upstash_redis_rest_token: str = ""
    check_update_ttl_seconds: int = 600
    checks_created_ttl_seconds: int = 3600

    # Webhook ingress
    supported_owners: Annotated[list[str], NoDecode] = []
    check_names: Annotated[list[str], NoDecode] = list(DEFAULT_CHECK_NAMES)

    rate_limit_window_ms: int = 60_000
    rate_limit_max_requests: int = 100
    circuit_failure_threshold: int = 5
    circuit_timeout_ms: int = 60_000

    github_api_url: str = "https://api.github.com"

    model_config = {"env_prefix": ""}

    @field_validator("supported_owners", "check_names", mode="before")
    @classmethod
    def _parse_lists(cls, value: object) -> object:
        return _parse_name_list(value)

    @property
    def private_key(self) -> str:
        return unescape_private_key(self.gh_app_private_key)


@dataclass(frozen=True)
class OwnerCredentials:
    """GitHub App credentials for one supported organization."""

    name: str
    repository: str
    app_id: str
    private_key: str
    webhook_secret: str
    aliases: tuple[str, ...] = ()

    def matches(self, login: str) -> bool:
        wanted = login.strip().lower()
        return wanted == self.name.lower() or wanted in (a.lower() for a in self.aliases)


@dataclass
class OwnerRegistry:
    """Static owner → credential table, built once at startup."""

    owners: dict[str, OwnerCredentials] = field(default_factory=dict)

    def resolve(self, login: str | None) -> OwnerCredentials | None:
        if not login:
            return None
        for owner in self.owners.values():
            if owner.matches(login):
                return owner
        return None

    def webhook_secrets(self) -> list[tuple[OwnerCredentials, str]]:
        return [(owner, owner.webhook_secret) for owner in self.owners.values()]

    def __len__(self) -> int:
        return len(self.owners)


_REQUIRED_OWNER_VARS = {
    "repository": "GITHUB_REPOSITORY_{}",
    "app_id": "GITHUB_APP_ID_{}",
    "private_key": "GITHUB_PRIVATE_KEY_{}",
    "webhook_secret": "GITHUB_WEBHOOK_SECRET_{}",
}


def load_owner_registry(
    owner_names: list[str],
    environ: Mapping[str, str] | None = None,
) -> OwnerRegistry:
    """Read per-owner credentials from the environment.

    Fails fast: every listed owner must define all of its variables, with
    the repository given as ``owner/repo``.
    """
    env = os.environ if environ is None else environ
    registry = OwnerRegistry()
    for raw_name in owner_names:
        name = raw_name.strip()
        if not name:
            continue
        suffix = name.upper()
        values: dict[str, str] = {}
        missing: list[str] = []
        for attr, template in _REQUIRED_OWNER_VARS.items():
            var = template.format(suffix)
            value = env.get(var, "").strip()
            if not value:
                missing.append(var)
            values[attr] = value
        if missing:
            raise ConfigurationError(
                f"Owner '{name}' is missing required settings: {', '.join(missing)}"
            )
        split_repository(values["repository"])
        aliases = _parse_name_list(env.get(f"GITHUB_OWNER_ALIASES_{suffix}", ""))
        registry.owners[name.lower()] = OwnerCredentials(
            name=name,
            repository=values["repository"],
            app_id=values["app_id"],
            private_key=unescape_private_key(values["private_key"]),
            webhook_secret=values["webhook_secret"],
            aliases=tuple(aliases),
        )
    return registry


def split_repository(full_name: str) -> tuple[str, str]:
    """Split ``owner/repo``; anything else is a configuration problem."""
    parts = full_name.strip().split("/")
    if len(parts) != 2 or not all(parts):
        raise ConfigurationError(f"Repository must look like 'owner/repo', got {full_name!r}")
    return parts[0], parts[1]


settings = Settings()
