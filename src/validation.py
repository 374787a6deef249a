"""Validation and sanitization of untrusted report and webhook input."""

from __future__ import annotations

import hashlib
import hmac
import html
import re
from urllib.parse import urlparse

from src.errors import ValidationError
from src.schemas.checks import CheckConclusion, CheckStatus, ReportPayload

_SHA_RE = re.compile(r"[a-f0-9]{40}", re.IGNORECASE)

VALID_STATUSES = frozenset(s.value for s in CheckStatus)
VALID_CONCLUSIONS = frozenset(c.value for c in CheckConclusion)


def sanitize_input(text: str) -> str:
    """Escape ``< > " ' &`` as HTML entities."""
    return html.escape(text, quote=True)


def is_valid_sha(sha: object) -> bool:
    return isinstance(sha, str) and _SHA_RE.fullmatch(sha) is not None


def _is_bounded_string(value: object, max_length: int) -> bool:
    return isinstance(value, str) and 0 < len(value) <= max_length


def _is_absolute_url(value: object) -> bool:
    if not isinstance(value, str):
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)


def validate_report_payload(body: object) -> ReportPayload:
    """Turn a parsed JSON body into a ``ReportPayload``.

    Checks run in a fixed order and stop at the first failure, so the error
    always names the earliest bad field. Values are validated as received;
    escaping happens afterwards in ``sanitize_report_payload``.
    """
    if not isinstance(body, dict):
        raise ValidationError("Invalid payload: must be an object")

    sha = body.get("sha")
    if not is_valid_sha(sha):
        raise ValidationError("Invalid SHA: must be 40 character hex string")

    name = body.get("name")
    if not _is_bounded_string(name, 100):
        raise ValidationError("Invalid name: must be 1-100 characters")

    status = body.get("status")
    if not isinstance(status, str) or status not in VALID_STATUSES:
        raise ValidationError("Invalid status: must be queued, in_progress, or completed")

    conclusion = body.get("conclusion") or None
    if conclusion is not None and (
        not isinstance(conclusion, str) or conclusion not in VALID_CONCLUSIONS
    ):
        raise ValidationError("Invalid conclusion: must be one of the allowed conclusion types")

    title = body.get("title")
    if not _is_bounded_string(title, 200):
        raise ValidationError("Invalid title: must be 1-200 characters")

    summary = body.get("summary")
    if not _is_bounded_string(summary, 1000):
        raise ValidationError("Invalid summary: must be 1-1000 characters")

    details_url = body.get("details_url")
    if not _is_absolute_url(details_url):
        raise ValidationError("Invalid details_url: must be a valid URL")

    return ReportPayload(
        sha=sha,
        name=name,
        status=status,
        conclusion=conclusion,
        title=title,
        summary=summary,
        details_url=details_url,
    )


def sanitize_report_payload(payload: ReportPayload) -> ReportPayload:
    return payload.model_copy(
        update={
            "title": sanitize_input(payload.title),
            "summary": sanitize_input(payload.summary),
        }
    )


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check an ``x-hub-signature-256`` header against the raw body."""
    if not secret or not signature.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)
