"""
Pytest configuration for credcapture tests.

Registers custom markers:
    slow: Tests that launch a real Chromium through patchright (need `patchright install chromium`)

Provides:
    site            — a SiteConfig for a fictional target-site.com
    fake_browser    — stands in for BrowserManager; records the surfaces it opens
    send_request    — sends raw bytes to a loopback port and returns the reply

Usage:
    pytest tests/ -v                    # Run all tests
    pytest tests/ -v -m "not slow"      # Skip browser tests
    pytest tests/ -v -m slow            # Only run browser tests
"""

import asyncio

import pytest

from credcapture.schemas import SiteConfig


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that launch a real browser (slow, requires Chromium)"
    )


# ── Fakes ────────────────────────────────────────────────────────────

class FakeSurface:
    """In-memory CaptureSurface: remembers where it was sent and what it ran."""

    def __init__(self, url: str):
        self.url = url
        self.is_open = True
        self.visited = [url]
        self.evaluated = []
        self.evaluate_result = None
        self.evaluate_error = None

    async def goto(self, url: str):
        self.visited.append(url)
        self.url = url

    async def evaluate(self, script: str):
        self.evaluated.append(script)
        if self.evaluate_error is not None:
            raise self.evaluate_error
        return self.evaluate_result

    async def bring_to_front(self):
        pass

    async def close(self):
        self.is_open = False


class FakeBrowser:
    """In-memory BrowserManager. Set fail_with to make open_surface raise."""

    def __init__(self):
        self.surfaces: list[FakeSurface] = []
        self.init_scripts: list[str] = []
        self.fail_with = None
        self.stopped = False

    async def open_surface(self, url: str, init_script: str) -> FakeSurface:
        if self.fail_with is not None:
            raise self.fail_with
        surface = FakeSurface(url)
        self.surfaces.append(surface)
        self.init_scripts.append(init_script)
        return surface

    async def stop(self):
        self.stopped = True


# ── Fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def site():
    """A target site on target-site.com with a short tag prefix."""
    return SiteConfig(
        name="target",
        login_url="https://www.target-site.com/login/",
        domain="target-site.com",
        tag_prefix="TAG:",
    )


@pytest.fixture
def fake_browser():
    return FakeBrowser()


@pytest.fixture
def send_request():
    """Send raw bytes to 127.0.0.1:port and return everything sent back."""

    async def _send(port: int, data: bytes, timeout: float = 5.0) -> bytes:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection("127.0.0.1", port), timeout
        )
        try:
            writer.write(data)
            await writer.drain()
            return await asyncio.wait_for(reader.read(), timeout)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    return _send


def token_request(candidate: str, path: str = "/token") -> bytes:
    """The request line the injected script sends, for an already-encoded candidate."""
    return f"GET {path}?t={candidate} HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n".encode("latin-1")


@pytest.fixture
def make_request():
    return token_request
