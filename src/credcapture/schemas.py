"""
Pydantic models for credential capture.

Models are organized into:
  - Capture state: CredentialKind, CaptureStatus, Credential, SessionInfo
  - Site configuration: SiteConfig
  - Host RPC payloads: NavigateRequest, TokenRequest, FetchRequest, FetchResult
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from . import patterns


# ── Capture state ────────────────────────────────────────────────────

class CredentialKind(str, Enum):
    """What a captured credential is.

    OPAQUE_OR_BEARER is a secret usable as-is (bearer token, JWT, session id).
    TAGGED_IDENTIFIER is a non-secret user identifier (e.g. a profile slug)
    recovered when no token is readable from script; the host derives the
    session out-of-band.
    """
    OPAQUE_OR_BEARER = "opaque_or_bearer"
    TAGGED_IDENTIFIER = "tagged_identifier"


class CaptureStatus(str, Enum):
    """Lifecycle of one capture session. captured/cancelled/closed are terminal."""
    IDLE = "idle"
    LISTENING = "listening"
    CAPTURED = "captured"
    CANCELLED = "cancelled"
    CLOSED = "closed"


TERMINAL_STATUSES = frozenset(
    {CaptureStatus.CAPTURED, CaptureStatus.CANCELLED, CaptureStatus.CLOSED}
)


class Credential(BaseModel):
    """A validated candidate. Immutable once built.

    Attributes:
        raw: The string exactly as reported by the browser.
        kind: Opaque/bearer secret or tagged identifier.
        value: The usable part: raw for opaque credentials, the identifier
               (without the tag prefix) for tagged ones.
        captured_at: When the server accepted it. Diagnostics only.
    """
    model_config = ConfigDict(frozen=True)

    raw: str
    kind: CredentialKind
    value: str
    captured_at: datetime


class SessionInfo(BaseModel):
    """Read-only snapshot of the coordinator's session slot."""
    id: Optional[str] = None
    status: CaptureStatus = CaptureStatus.IDLE
    port: Optional[int] = None
    site: Optional[str] = None
    surface_open: bool = False


# ── Site configuration ───────────────────────────────────────────────

class SiteConfig(BaseModel):
    """Everything the heuristics need to know about one target site.

    Attributes:
        name: Short name used on the command line (e.g. "depop").
        login_url: Page opened in the browser surface when a session starts.
        domain: Registrable domain; navigate() only accepts this host or its subdomains.
        tag_prefix: Prefix wrapping a recovered user identifier.
        reserved_paths: First path segments that are never usernames.
        login_path_pattern: Paths on which identifier recovery is skipped.
        profile_path_pattern: Shape of a personal profile path.
        profile_link_selectors: CSS selectors for navigation links to the user's profile.
        hydration_global: Name of the framework hydration object.
        state_globals: Other global state objects searched last.
    """
    name: str
    login_url: str
    domain: str
    tag_prefix: str = "SITE_ID:"
    reserved_paths: list[str] = Field(default_factory=lambda: list(patterns.RESERVED_PATHS))
    login_path_pattern: str = patterns.LOGIN_PATH_PATTERN
    profile_path_pattern: str = patterns.PROFILE_PATH_PATTERN
    profile_link_selectors: list[str] = Field(
        default_factory=lambda: list(patterns.PROFILE_LINK_SELECTORS)
    )
    hydration_global: str = patterns.HYDRATION_GLOBAL
    state_globals: list[str] = Field(default_factory=lambda: list(patterns.STATE_GLOBALS))


# ── Host RPC payloads ────────────────────────────────────────────────

class NavigateRequest(BaseModel):
    url: str


class TokenRequest(BaseModel):
    token: str


class FetchRequest(BaseModel):
    """Outbound request made on the host's behalf.

    Attributes:
        url: Absolute URL to request.
        method: HTTP method. Only GET, POST and PUT are honoured; anything else is sent as GET.
        headers: Extra request headers.
        body: Raw request body.
    """
    url: str
    method: Optional[str] = None
    headers: Optional[dict[str, str]] = None
    body: Optional[str] = None


class FetchResult(BaseModel):
    status: int
    content_type: str = ""
    body: str = ""
