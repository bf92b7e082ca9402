"""
Plausibility rules for captured credential candidates.

A candidate is any string reported by the browser instrumentation. It is worth
accepting when it is either:
  - a tagged identifier: starts with the site's tag prefix (e.g. "SITE_ID:")
    followed by a non-empty, whitespace-free identifier such as a username, or
  - an opaque/bearer credential: at least 20 characters with no whitespace.

The same rules are mirrored in the injected browser script (instrumentation.py)
to cut down traffic, but the check here is the one that decides.
"""

import re
from datetime import datetime, timezone
from typing import Optional

from .schemas import Credential, CredentialKind

# Prefix used when no site-specific one is configured
DEFAULT_TAG_PREFIX = "SITE_ID:"

# Shortest opaque credential we are willing to accept
MIN_TOKEN_LENGTH = 20

_WHITESPACE = re.compile(r"\s")
_BEARER_SCHEME = re.compile(r"^bearer\s+", re.IGNORECASE)


def _has_whitespace(value: str) -> bool:
    return _WHITESPACE.search(value) is not None


def is_plausible(candidate, tag_prefix: str = DEFAULT_TAG_PREFIX) -> bool:
    """Decide whether a candidate string looks like a usable credential.

    Args:
        candidate: The value reported by the browser. Non-strings are rejected.
        tag_prefix: Prefix marking a tagged identifier.

    Returns:
        bool: True for a tagged identifier with a non-empty, whitespace-free
              remainder, or for any whitespace-free string of 20+ characters.
    """
    if not isinstance(candidate, str) or not candidate:
        return False

    if tag_prefix and candidate.startswith(tag_prefix):
        identifier = candidate[len(tag_prefix):]
        if identifier and not _has_whitespace(identifier):
            return True

    return len(candidate) >= MIN_TOKEN_LENGTH and not _has_whitespace(candidate)


def classify(candidate, tag_prefix: str = DEFAULT_TAG_PREFIX,
             captured_at: Optional[datetime] = None) -> Optional[Credential]:
    """Turn a plausible candidate into an immutable Credential.

    Args:
        candidate: The raw value reported by the browser.
        tag_prefix: Prefix marking a tagged identifier.
        captured_at: Capture time. Defaults to now (UTC).

    Returns:
        Credential | None: The credential, or None if the candidate is not plausible.
    """
    if not is_plausible(candidate, tag_prefix):
        return None

    kind = CredentialKind.OPAQUE_OR_BEARER
    value = candidate
    if tag_prefix and candidate.startswith(tag_prefix):
        identifier = candidate[len(tag_prefix):]
        if identifier and not _has_whitespace(identifier):
            kind = CredentialKind.TAGGED_IDENTIFIER
            value = identifier

    return Credential(
        raw=candidate,
        kind=kind,
        value=value,
        captured_at=captured_at or datetime.now(timezone.utc),
    )


def normalize(candidate: str) -> str:
    """Strip surrounding whitespace and a leading "Bearer " scheme from a pasted token."""
    return _BEARER_SCHEME.sub("", candidate.strip()).strip()


def mask(value: str) -> str:
    """Short, log-safe rendering of a credential (prefix and length only)."""
    if not value:
        return "<empty>"
    return f"{value[:6]}... ({len(value)} chars)"
