"""Helpers shared by the webhook and report handlers."""

from __future__ import annotations

import json
import logging
import secrets
import string
import time

from src.clients.dedup_store import DedupStore
from src.errors import DedupStoreError

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_request_id() -> str:
    """``<epoch ms>-<9 random chars>``, used to tag every log line of a request."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{int(time.time() * 1000)}-{suffix}"


def parse_json(body: bytes) -> object:
    """Decode a JSON body; returns None when it is not valid JSON."""
    try:
        return json.loads(body)
    except ValueError:
        return None


async def release_claim(store: DedupStore, key: str, request_id: str) -> None:
    """Undo a dedup claim after the guarded mutation failed.

    The mutation's own error is what the caller reports, so a failed release
    is only logged; the key then simply expires with its TTL.
    """
    try:
        await store.delete(key)
    except DedupStoreError as exc:
        logger.warning("[%s] Could not release dedup key %s: %s", request_id, key, exc)
