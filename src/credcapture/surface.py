"""
The browser surface: one page showing the target site.

Wraps a patchright Page with the few operations the coordinator needs
(navigate, evaluate a script, close) and tracks whether the user has closed the
window.
"""

from typing import Any, Optional

from loguru import logger
from patchright.async_api import BrowserContext, Page

# Navigation timeout (ms). Login pages behind bot protection can be slow.
NAVIGATION_TIMEOUT = 60000


class CaptureSurface:
    """A single capture page.

    Attributes:
        page (Page): The underlying patchright page.
    """

    def __init__(self, page: Page):
        self.page = page
        self._closed = False
        page.on("close", self._on_close)

    @classmethod
    async def open(cls, context: BrowserContext, url: str, init_script: str) -> "CaptureSurface":
        """Create a page, register init_script on it and load url.

        The page is closed again if navigation fails.
        """
        page = await context.new_page()
        surface = cls(page)
        try:
            await page.add_init_script(script=init_script)
            await surface.goto(url)
        except Exception:
            await surface.close()
            raise
        return surface

    def _on_close(self, _page):
        if not self._closed:
            logger.info("Capture window closed")
        self._closed = True

    @property
    def is_open(self) -> bool:
        """False once the window was closed, by us or by the user."""
        return not self._closed and not self.page.is_closed()

    @property
    def url(self) -> Optional[str]:
        return self.page.url if self.is_open else None

    async def goto(self, url: str):
        logger.info(f"Navigating capture window to {url}")
        await self.page.goto(url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT)

    async def evaluate(self, script: str) -> Any:
        return await self.page.evaluate(script)

    async def bring_to_front(self):
        try:
            await self.page.bring_to_front()
        except Exception as e:
            logger.debug(f"Could not focus capture window: {e}")

    async def close(self):
        """Close the page. Idempotent."""
        if self._closed or self.page.is_closed():
            self._closed = True
            return
        self._closed = True
        try:
            await self.page.close()
        except Exception as e:
            logger.debug(f"Capture window already gone: {e}")
