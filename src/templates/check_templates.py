"""Check-run request bodies sent to the GitHub Checks API."""

from __future__ import annotations

from datetime import datetime, timezone

from src.schemas.checks import ReportPayload


def build_queued_output(check_name: str) -> dict:
    """Output block for a freshly created, queued check run."""
    return {
        "title": f"{check_name} - Queued",
        "summary": f"{check_name} has been queued and will start shortly.",
    }


def build_update_fields(payload: ReportPayload, now: datetime | None = None) -> dict:
    """Keyword arguments for ``update_check_run`` from a sanitized report.

    ``completed_at`` is stamped only when the report carries a conclusion.
    """
    completed_at = None
    if payload.conclusion:
        completed_at = (now or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z")
    return {
        "status": payload.status,
        "conclusion": payload.conclusion,
        "completed_at": completed_at,
        "output": {"title": payload.title, "summary": payload.summary},
        "details_url": payload.details_url,
    }
