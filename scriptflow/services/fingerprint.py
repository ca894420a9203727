"""Source reference normalization and request fingerprints."""

import hashlib
import json
import re
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

MEDIA_PATH_SEGMENTS = {"reel", "reels", "p", "tv"}
HOST_PREFIXES = ("www.", "m.")
_MEDIA_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def normalize_source_reference(url: str) -> str:
    """
    Normalize a reel URL so equivalent references share one cache key.

    Lower-cases scheme and host, strips ``www.``/``m.`` prefixes, drops the
    query string and fragment (tracking parameters), collapses ``/reels/``
    into ``/reel/`` and removes the trailing slash.

    Raises:
        ValueError: if the URL is not an http(s) media reference.
    """
    if not isinstance(url, str):
        raise ValueError("Source reference must be a string")

    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise ValueError("Source reference must be an http(s) URL")

    host = (parts.hostname or "").lower()
    if not host:
        raise ValueError("Source reference has no host")
    for prefix in HOST_PREFIXES:
        if host.startswith(prefix):
            host = host[len(prefix):]
            break

    segments = [s for s in parts.path.split("/") if s]
    media_index = next(
        (i for i, s in enumerate(segments) if s.lower() in MEDIA_PATH_SEGMENTS), None
    )
    if media_index is None or media_index + 1 >= len(segments):
        raise ValueError("Source reference must point at a reel")

    media_id = segments[media_index + 1]
    if not _MEDIA_ID_PATTERN.match(media_id):
        raise ValueError("Source reference has an invalid media id")

    kind = segments[media_index].lower()
    if kind == "reels":
        kind = "reel"

    path = f"/{kind}/{media_id}"
    return urlunsplit(("https", host, path, "", ""))


def source_host(normalized: str) -> str:
    return urlsplit(normalized).hostname or ""


def source_cache_key(normalized: str) -> str:
    """Tier-1 analysis cache key for an already-normalized source."""
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def normalize_idea(idea: str) -> str:
    return " ".join(idea.split())


def compute_fingerprint(
    identity: str,
    normalized_source: str,
    idea: str,
    hints: Optional[dict] = None,
) -> str:
    """Deterministic hash identifying one logical request."""
    clean_hints = {k: v for k, v in sorted((hints or {}).items()) if v is not None}
    payload = json.dumps(
        [identity, normalized_source, normalize_idea(idea), clean_hints],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
