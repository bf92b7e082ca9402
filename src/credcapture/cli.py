"""
Typer CLI application for credcapture.

Commands:
    capture      — Open the capture window and print the credential once captured
    serve        — Start the local API server for a host application
    sites        — List known target sites
    site-add     — Add or update a target site
    site-remove  — Remove a user-defined target site
    default      — Set or clear the default target site
    version      — Print the version (and optionally the changelog)

Usage:
    credcapture capture
    credcapture capture --site depop --json
    credcapture serve --port 5125 --verbose
    credcapture site-add example --login-url https://example.com/login --domain example.com
"""

import asyncio
import sys
import threading
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from . import __version__, read_changelog
from .browser import BrowserManager
from .config import BUILTIN_SITES, available_sites, load_config, resolve_site, save_config
from .coordinator import SessionCoordinator
from .errors import CaptureError, SetupError
from .schemas import CredentialKind, SiteConfig

# Disable loguru output by default for clean CLI output.
# Re-enabled per-command with --verbose flag.
logger.remove()

app = typer.Typer(help="credcapture: capture a session credential from a website without a login API.")

QUIT_COMMANDS = ("q", "quit", "exit")
RESCAN_COMMANDS = ("r", "rescan")


def _enable_logging(verbose: bool):
    if verbose:
        logger.add(sys.stderr, level="INFO")


def _site_or_exit(name: Optional[str]) -> SiteConfig:
    site = resolve_site(name)
    if site is None:
        label = name or "(default)"
        print(f"Unknown site: '{label}'. Use 'credcapture sites' to see available sites.")
        raise typer.Exit(1)
    return site


def _stdin_queue(loop: asyncio.AbstractEventLoop) -> asyncio.Queue:
    """Feed stdin lines into an asyncio.Queue from a daemon thread (None at EOF).

    The thread is a daemon so a blocked stdin read never holds up interpreter exit
    once the credential has arrived.
    """
    queue: asyncio.Queue = asyncio.Queue()

    def reader():
        try:
            for line in sys.stdin:
                loop.call_soon_threadsafe(queue.put_nowait, line.strip())
            loop.call_soon_threadsafe(queue.put_nowait, None)
        except RuntimeError:
            # Event loop already closed
            return

    threading.Thread(target=reader, name="credcapture-stdin", daemon=True).start()
    return queue


async def _handle_command(coordinator: SessionCoordinator, line: str):
    """Run one interactive command typed while waiting for a capture."""
    try:
        if line.lower() in RESCAN_COMMANDS:
            found = await coordinator.rescan()
            print(f"  Rescan sent identifier '{found}'." if found else "  Rescan found nothing.")
        elif line.lower().startswith(("http://", "https://")):
            await coordinator.navigate(line)
            print("  Opened link in the capture window.")
        else:
            await coordinator.submit(line)
    except CaptureError as e:
        print(f"  {e}")


@app.command()
def capture(
    site: Optional[str] = typer.Option(None, "--site", "-s", help="Target site name (see 'credcapture sites')"),
    profile: Optional[Path] = typer.Option(None, "--profile", help="Path to a custom browser profile directory"),
    timeout: float = typer.Option(600, "--timeout", "-t", help="Seconds to wait for a credential"),
    as_json: bool = typer.Option(False, "--json", help="Print the credential as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Open the target site, wait for a credential, and print it.

    While waiting, type 'r' to rescan for a user identifier, paste a sign-in
    link from the site to open it, paste a token to submit it by hand, or 'q'
    to give up.

    Args:
        site: Target site name. Uses the default site if omitted.
        profile: Optional custom path for the browser profile directory.
        timeout: How long to wait before giving up.
        as_json: Print the full credential as JSON instead of just its value.
        verbose: If True, enable debug logging to stderr.
    """
    _enable_logging(verbose)
    site_config = _site_or_exit(site)

    async def _capture():
        coordinator = SessionCoordinator(site_config, browser=BrowserManager(profile_dir=profile))
        try:
            await coordinator.open_session()

            print(f"\n  Sign in to {site_config.name} in the browser window.")
            print("  Commands: 'r' rescan, paste a sign-in link or a token, 'q' quit.\n")

            commands = _stdin_queue(asyncio.get_running_loop())
            captured = asyncio.ensure_future(coordinator.wait_for_credential(timeout))
            while True:
                next_line = asyncio.ensure_future(commands.get())
                done, _ = await asyncio.wait({captured, next_line}, return_when=asyncio.FIRST_COMPLETED)
                if captured in done:
                    next_line.cancel()
                    return captured.result()

                line = next_line.result()
                if line is None or line.lower() in QUIT_COMMANDS:
                    captured.cancel()
                    return None
                if line:
                    await _handle_command(coordinator, line)
        finally:
            await coordinator.close()

    try:
        credential = asyncio.run(_capture())
    except SetupError as e:
        print(f"Could not start capture: {e}")
        raise typer.Exit(1)
    except asyncio.TimeoutError:
        print(f"No credential captured within {timeout:.0f}s.")
        raise typer.Exit(1)

    if credential is None:
        print("Capture cancelled.")
        raise typer.Exit(1)

    if as_json:
        print(credential.model_dump_json(indent=2))
    elif credential.kind == CredentialKind.TAGGED_IDENTIFIER:
        print(f"Identifier: {credential.value}")
    else:
        print(credential.value)


@app.command()
def serve(
    port: int = typer.Option(5125, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
    site: Optional[str] = typer.Option(None, "--site", "-s", help="Target site name"),
    profile: Optional[Path] = typer.Option(None, "--profile", help="Path to a custom browser profile directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Start the local API server a host application drives capture through.

    Args:
        port: The port to listen on. Defaults to 5125.
        host: The host to bind to. Defaults to loopback only.
        site: Target site name. Uses the default site if omitted.
        profile: Optional custom path for the browser profile directory.
        verbose: If True, enable debug logging.
    """
    _enable_logging(verbose)
    site_config = _site_or_exit(site)

    from .server import app as server_app, configure
    import uvicorn

    configure(site_config, SessionCoordinator(site_config, browser=BrowserManager(profile_dir=profile)))
    print(f"\n  credcapture API server starting on http://{host}:{port} (site: {site_config.name})")
    print(f"  Start a session: POST http://{host}:{port}/v1/session")
    print(f"  Credentials:     GET  http://{host}:{port}/v1/events (SSE)\n")
    uvicorn.run(server_app, host=host, port=port, log_level="info" if verbose else "warning")


@app.command()
def sites():
    """List the built-in and user-defined target sites."""
    config = load_config()
    default = config.get("default_site")
    known = available_sites(config)

    if not known:
        print("\n  No sites configured.\n")
        return

    print("\n  Target sites:\n")
    for name, entry in sorted(known.items()):
        origin = "built-in" if name in BUILTIN_SITES and name not in config.get("sites", {}) else "user"
        marker = " (default)" if name == default else ""
        print(f"    {name:<16} {entry.get('login_url', '?'):<45} {origin}{marker}")
    print()


@app.command("site-add")
def site_add(
    name: str = typer.Argument(help="Short name for the site"),
    login_url: str = typer.Option(..., "--login-url", help="Page opened when a capture starts"),
    domain: str = typer.Option(..., "--domain", help="Domain that sign-in links must be on"),
    tag_prefix: Optional[str] = typer.Option(None, "--tag-prefix", help="Prefix for captured user identifiers"),
):
    """Add a target site, or update one (user entries override built-ins)."""
    config = load_config()
    entry = {"login_url": login_url, "domain": domain}
    if tag_prefix:
        entry["tag_prefix"] = tag_prefix
    config["sites"][name] = entry
    save_config(config)
    print(f"Saved site: {name} -> {login_url}")


@app.command("site-remove")
def site_remove(
    name: str = typer.Argument(help="Site name to remove"),
):
    """Remove a user-defined site. Clears the default if it pointed at it."""
    config = load_config()
    if name not in config["sites"]:
        print(f"Site '{name}' is not user-defined.")
        raise typer.Exit(1)

    config["sites"].pop(name)
    if config.get("default_site") == name and name not in BUILTIN_SITES:
        config["default_site"] = None
    save_config(config)
    print(f"Removed site: {name}")


@app.command("default")
def set_default(
    name: str = typer.Argument(help="Site name to use as default (or 'none' to clear)"),
):
    """Set the site used when --site is not given. Pass 'none' to clear it."""
    config = load_config()

    if name.lower() == "none":
        config["default_site"] = None
        save_config(config)
        print("Default site cleared.")
        return

    if name not in available_sites(config):
        print(f"Site '{name}' not found. Add it first with 'credcapture site-add {name} ...'.")
        raise typer.Exit(1)

    config["default_site"] = name
    save_config(config)
    print(f"Default site set to: {name}")


@app.command()
def version(
    changelog: bool = typer.Option(False, "--changelog", help="Also print the changelog"),
):
    """Print the installed version."""
    print(f"credcapture {__version__}")
    if changelog:
        print()
        print(read_changelog())


if __name__ == "__main__":
    app()
