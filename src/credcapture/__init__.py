"""
credcapture — capture a session credential from a website that has no login API.

Opens the site in a Chromium window (via patchright), injects a script before
page load that looks for the signed-in user's bearer token (or, failing that,
their user identifier), and receives it on a one-shot loopback listener.

Public API:
    from credcapture import SessionCoordinator, resolve_site

    coordinator = SessionCoordinator(resolve_site("depop"))
    await coordinator.open_session()
    credential = await coordinator.wait_for_credential()
"""

from importlib.resources import files

from .config import resolve_site
from .coordinator import SessionCoordinator
from .schemas import Credential, CredentialKind
from .validator import is_plausible

__version__ = "0.3.0"


def read_changelog() -> str:
    """Return the bundled CHANGELOG.md text."""
    return files(__name__).joinpath("CHANGELOG.md").read_text(encoding="utf-8")


__all__ = [
    "Credential",
    "CredentialKind",
    "SessionCoordinator",
    "__version__",
    "is_plausible",
    "read_changelog",
    "resolve_site",
]
