"""
Browser lifecycle management for credcapture.

Launches a persistent Chromium instance via patchright (stealth Playwright fork)
and hands out capture surfaces (pages) with the capture script registered as an
init script.

The window is always visible: the user signs in to the target site by hand.
The persistent profile keeps the site's own cookies between runs, so a user who
is already signed in lands on an authenticated page and the capture usually
fires without any typing.

Usage:
    manager = BrowserManager()
    surface = await manager.open_surface("https://www.depop.com/login/", script)
    ...
    await manager.stop()
"""

import asyncio
from pathlib import Path
from typing import Optional

from loguru import logger
from patchright.async_api import BrowserContext, async_playwright

from .surface import CaptureSurface

# Default persistent profile directory. Stores the target site's cookies and
# storage so the user only has to sign in once.
DEFAULT_PROFILE_DIR = Path.home() / ".credcapture" / "profile"

# Chromium features that block or preflight requests from a public HTTPS page
# to a loopback address. The capture script reports to http://127.0.0.1.
LOOPBACK_BLOCKING_FEATURES = [
    "BlockInsecurePrivateNetworkRequests",
    "PrivateNetworkAccessRespectPreflightResults",
    "LocalNetworkAccessChecks",
]


class BrowserManager:
    """Manages the lifecycle of the persistent Chromium instance.

    Attributes:
        profile_dir (Path): Directory for the persistent Chromium user profile.
        headless (bool): Run without a window. Only useful for tests, since the
                         user normally has to interact with the login page.
    """

    def __init__(self, profile_dir: Optional[Path] = None, headless: bool = False):
        self.profile_dir = Path(profile_dir) if profile_dir else DEFAULT_PROFILE_DIR
        self.headless = headless
        self._patchright = None
        self._browser_context: Optional[BrowserContext] = None
        self._start_lock = asyncio.Lock()

        self.profile_dir.mkdir(parents=True, exist_ok=True)

    async def start(self) -> BrowserContext:
        """Launch Chromium with a persistent context, once.

        Returns:
            BrowserContext: The running context. Repeated calls return the same one.

        Raises:
            Exception: If the browser fails to launch (e.g., missing Chromium installation).
        """
        async with self._start_lock:
            if self._browser_context is not None:
                return self._browser_context

            logger.info(f"Launching browser with profile: {self.profile_dir} (headless={self.headless})")
            args = [
                "--disable-blink-features=AutomationControlled",
                "--disable-features=" + ",".join(LOOPBACK_BLOCKING_FEATURES),
            ]
            if not self.headless:
                # Override any saved off-screen position from earlier runs
                args.append("--window-position=100,100")

            if self._patchright is None:
                self._patchright = await async_playwright().start()
            try:
                self._browser_context = await self._patchright.chromium.launch_persistent_context(
                    user_data_dir=str(self.profile_dir),
                    headless=self.headless,
                    args=args,
                    no_viewport=True,
                )
            except Exception:
                await self._patchright.stop()
                self._patchright = None
                raise

            # Closing the last window must not leave a half-dead context behind
            self._browser_context.on("close", lambda _ctx: self._forget_context())
            return self._browser_context

    async def open_surface(self, url: str, init_script: str) -> CaptureSurface:
        """Open a new page with init_script registered, then navigate it to url.

        Args:
            url: The page to load (normally the site's login URL).
            init_script: JavaScript to run in every document before page scripts.

        Returns:
            CaptureSurface: The opened surface.
        """
        context = await self.start()
        return await CaptureSurface.open(context, url, init_script)

    def _forget_context(self):
        logger.info("Browser context closed")
        self._browser_context = None

    async def stop(self):
        """Close the browser context and stop patchright."""
        context, self._browser_context = self._browser_context, None
        if context is not None:
            try:
                await context.close()
            except Exception as e:
                logger.debug(f"Browser context already gone: {e}")
        if self._patchright:
            await self._patchright.stop()
            self._patchright = None
        logger.info("Browser stopped.")

    @property
    def context(self) -> Optional[BrowserContext]:
        """The active BrowserContext, or None if not started."""
        return self._browser_context
