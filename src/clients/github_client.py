"""GitHub App client for the Checks API.

Authentication is two-legged: an app-level JWT finds the repository's
installation, then an installation token scopes every Checks API call.
Installation tokens are cached per installation id until shortly before
GitHub expires them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import jwt

from src.errors import GitHubError

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
_TOKEN_REFRESH_MARGIN = timedelta(seconds=60)
_NO_RETRY_STATUSES = {403, 404}


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class InstallationToken:
    token: str
    expires_at: datetime

    def is_fresh(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now + _TOKEN_REFRESH_MARGIN < self.expires_at


def _default_headers() -> dict[str, str]:
    return {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
        "User-Agent": "checks-gateway",
    }


async def _send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    action: str,
    **kwargs: Any,
) -> Any:
    """Issue one request and turn transport or HTTP failures into GitHubError."""
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        raise GitHubError(f"{action} failed: {exc}") from exc
    if resp.is_error:
        try:
            detail = resp.json().get("message", resp.text)
        except (ValueError, AttributeError):
            detail = resp.text
        raise GitHubError(f"{action} failed ({resp.status_code}): {detail}", resp.status_code)
    return resp.json() if resp.content else {}


class GitHubInstallationClient:
    """Checks API calls made with an installation access token."""

    def __init__(self, http: httpx.AsyncClient, base_url: str, token: str) -> None:
        self._http = http
        self._base_url = base_url
        self._headers = {**_default_headers(), "Authorization": f"token {token}"}

    async def _request(self, method: str, path: str, action: str, **kwargs: Any) -> Any:
        return await _send(
            self._http, method, f"{self._base_url}{path}", action, headers=self._headers, **kwargs
        )

    async def list_check_runs_for_ref(self, owner: str, repo: str, ref: str) -> list[dict]:
        data = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/commits/{ref}/check-runs",
            "List check runs",
            params={"per_page": 100},
        )
        runs = data.get("check_runs", [])
        logger.debug("Retrieved %d check runs for %s", len(runs), ref)
        return runs

    async def find_check_run(self, owner: str, repo: str, sha: str, name: str) -> dict:
        """Return the check run on *sha* named exactly *name*."""
        for run in await self.list_check_runs_for_ref(owner, repo, sha):
            if run.get("name") == name:
                return run
        raise GitHubError(f"Check run '{name}' not found for sha {sha}")

    async def update_check_run(
        self,
        owner: str,
        repo: str,
        check_run_id: int,
        *,
        status: str,
        conclusion: str | None = None,
        completed_at: str | None = None,
        output: dict | None = None,
        details_url: str | None = None,
    ) -> dict:
        body = {
            "status": status,
            "conclusion": conclusion,
            "completed_at": completed_at,
            "output": output,
            "details_url": details_url,
        }
        data = await self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/check-runs/{check_run_id}",
            "Update check run",
            json={k: v for k, v in body.items() if v is not None},
        )
        logger.info("Updated check run %s to status %s", check_run_id, status)
        return data

    async def create_check_run(
        self,
        owner: str,
        repo: str,
        *,
        name: str,
        head_sha: str,
        status: str = "queued",
        output: dict | None = None,
    ) -> dict:
        body: dict[str, Any] = {"name": name, "head_sha": head_sha, "status": status}
        if output is not None:
            body["output"] = output
        data = await self._request(
            "POST", f"/repos/{owner}/{repo}/check-runs", "Create check run", json=body
        )
        logger.info("Created check run %s for %s", name, head_sha)
        return data


class GitHubAppClient:
    """App-level GitHub client; hands out installation-scoped clients."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        base_url: str = GITHUB_API_URL,
        client: httpx.AsyncClient | None = None,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.app_id = app_id
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._private_key = private_key
        self._base_url = base_url.rstrip("/")
        self._http = client or httpx.AsyncClient(timeout=15.0)
        self._tokens: dict[int, InstallationToken] = {}

    def _generate_jwt(self) -> str:
        now = int(time.time())
        payload = {
            "iat": now - 60,  # tolerate clock drift
            "exp": now + 600,
            "iss": self.app_id,
        }
        try:
            return jwt.encode(payload, self._private_key, algorithm="RS256")
        except Exception as e:
            raise GitHubError(f"Failed to generate JWT: {e}") from e

    def _app_headers(self) -> dict[str, str]:
        return {**_default_headers(), "Authorization": f"Bearer {self._generate_jwt()}"}

    async def _app_request(self, method: str, path: str, action: str) -> Any:
        return await _send(
            self._http, method, f"{self._base_url}{path}", action, headers=self._app_headers()
        )

    async def get_installation_id(self, owner: str, repo: str) -> int:
        """Look up the repository's installation, retrying transient failures.

        403 and 404 mean the app is not installed or not allowed; those are
        raised immediately.
        """
        headers = self._app_headers()
        url = f"{self._base_url}/repos/{owner}/{repo}/installation"
        delay = self._retry_delay
        for attempt in range(1, self._retry_attempts + 1):
            try:
                data = await _send(self._http, "GET", url, "Get repository installation", headers=headers)
                break
            except GitHubError as exc:
                if exc.status_code in _NO_RETRY_STATUSES or attempt == self._retry_attempts:
                    raise
                logger.warning(
                    "Installation lookup for %s/%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    owner,
                    repo,
                    attempt,
                    self._retry_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                delay *= 2
        installation_id = data.get("id") if isinstance(data, dict) else None
        if not installation_id:
            raise GitHubError("Missing installation ID")
        logger.debug("Found installation %s for %s/%s", installation_id, owner, repo)
        return installation_id

    async def _installation_token(self, installation_id: int) -> str:
        cached = self._tokens.get(installation_id)
        if cached and cached.is_fresh():
            return cached.token
        data = await self._app_request(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            "Create installation token",
        )
        try:
            token = InstallationToken(token=data["token"], expires_at=_parse_timestamp(data["expires_at"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise GitHubError(f"Malformed installation token response: {exc}") from exc
        self._tokens[installation_id] = token
        return token.token

    async def installation(self, installation_id: int) -> GitHubInstallationClient:
        token = await self._installation_token(installation_id)
        return GitHubInstallationClient(self._http, self._base_url, token)

    async def close(self) -> None:
        await self._http.aclose()
