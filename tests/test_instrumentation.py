"""
Tests for the generated capture and rescan scripts.

The scripts only run inside a browser, so these check what Python controls:
the embedded configuration and the order in which the strategies are wired up.
The slow tests at the bottom run the capture script in a real Chromium
against pages served through request routing.

Run:
    python -m pytest tests/test_instrumentation.py -v
"""

import asyncio
import json
import re
from urllib.parse import urlsplit

import pytest

from credcapture import patterns
from credcapture.callback import CallbackServer
from credcapture.instrumentation import (
    INSTALLED_FLAG,
    STRATEGY_ORDER,
    build_capture_script,
    build_rescan_script,
    script_config,
)
from credcapture.schemas import CredentialKind

PORT = 43123


def _embedded_config(script: str) -> dict:
    """The JSON object the IIFE is called with."""
    start = script.rindex('})({"host"') + len("})(")
    assert script.endswith(")")
    return json.loads(script[start:-1])


class TestScriptConfig:
    def test_port_and_prefix(self, site):
        config = script_config(PORT, site)
        assert config["port"] == PORT
        assert config["host"] == "127.0.0.1"
        assert config["callbackPath"] == "/token"
        assert config["tagPrefix"] == "TAG:"

    def test_site_overrides(self, site):
        site = site.model_copy(update={"reserved_paths": ["shop"], "hydration_global": "__APP__"})
        config = script_config(PORT, site)
        assert config["reservedPaths"] == ["shop"]
        assert config["hydrationGlobal"] == "__APP__"

    def test_shared_constants(self, site):
        config = script_config(PORT, site)
        assert config["minTokenLength"] == 20
        assert config["jwtPrefix"] == patterns.JWT_PREFIX
        assert config["credentialFields"] == patterns.CREDENTIAL_FIELDS

    def test_patterns_compile_as_regexes(self, site):
        """Patterns are shared with JavaScript, so they must be plain regex syntax."""
        config = script_config(PORT, site)
        for key in ("authPathPattern", "storageKeyPattern", "loginPathPattern", "profilePathPattern"):
            re.compile(config[key])


class TestCaptureScript:
    def test_is_a_single_iife(self, site):
        script = build_capture_script(PORT, site)
        assert script.startswith("(function (cfg) {")
        assert "HELPERS" not in script

    def test_config_embedded(self, site):
        config = _embedded_config(build_capture_script(PORT, site, scan_interval=0.5, settle_delay=1))
        assert config["port"] == PORT
        assert config["tagPrefix"] == "TAG:"
        assert config["scanIntervalMs"] == 500
        assert config["settleDelayMs"] == 1000

    def test_strategies_installed_in_precedence_order(self, site):
        script = build_capture_script(PORT, site)
        positions = [script.index("// strategy: " + name) for name in STRATEGY_ORDER]
        assert positions == sorted(positions)

    def test_guards_against_double_install(self, site):
        assert INSTALLED_FLAG in build_capture_script(PORT, site)

    def test_each_session_port_gets_its_own_script(self, site):
        assert build_capture_script(1111, site) != build_capture_script(2222, site)


class TestRescanScript:
    def test_manual_identifier_recovery(self, site):
        script = build_rescan_script(PORT, site)
        assert "// strategy: identifier_recovery (manual)" in script
        assert "credcapture-diagnostics" in script
        assert _embedded_config(script)["port"] == PORT

    def test_overlay_timeout(self, site):
        assert _embedded_config(build_rescan_script(PORT, site, overlay_timeout=3))["overlayTimeoutMs"] == 3000


# ── Real browser (slow) ──────────────────────────────────────────────

SITE_ORIGIN = "http://www.target-site.test"
STORED_JWT = "eyJhbGciOiJIUzI1NiJ9." + "eyJzdWIiOiJhbGljZSJ9" * 3 + ".sig"
HEADER_TOKEN = "hdr_" + "QmVhcmVyRnJvbUhlYWRlcg" * 2
RESPONSE_TOKEN = "rsp_" + "QWNjZXNzRnJvbUxvZ2lu" * 2


def _html(script: str = "", head: str = "", body: str = "") -> str:
    return f"<html><head>{head}</head><body>{body}<script>{script}</script></body></html>"


async def _capture_in_chromium(site, tmp_path, pages, path, api=None,
                               scan_interval=0.2, settle_delay=0.3, wait=10.0):
    """Open path on a routed fake origin with the capture script installed.

    pages maps paths to HTML, api maps paths to JSON bodies; anything else is
    an empty JSON object. Returns what the callback server received within
    wait seconds (an empty list if nothing arrived).
    """
    pytest.importorskip("patchright")
    from credcapture.browser import BrowserManager

    api = api or {}

    async def serve(route):
        request_path = urlsplit(route.request.url).path
        if request_path in pages:
            await route.fulfill(status=200, content_type="text/html", body=pages[request_path])
        else:
            await route.fulfill(status=200, content_type="application/json",
                                body=json.dumps(api.get(request_path, {})))

    received = []
    server = CallbackServer(on_capture=received.append, tag_prefix=site.tag_prefix, grace_delay=0.05)
    port = await server.start()
    manager = BrowserManager(profile_dir=tmp_path / "profile", headless=True)
    try:
        try:
            context = await manager.start()
        except Exception as e:
            pytest.skip(f"Chromium not available: {e}")
        page = await context.new_page()
        await page.route(SITE_ORIGIN + "/**", serve)
        await page.add_init_script(
            build_capture_script(port, site, scan_interval=scan_interval, settle_delay=settle_delay)
        )
        await page.goto(SITE_ORIGIN + path)
        try:
            await asyncio.wait_for(server.wait_closed(), wait)
        except asyncio.TimeoutError:
            pass
    finally:
        server.cancel()
        await manager.stop()
    return received


def _only(received):
    assert len(received) == 1
    return received[0]


@pytest.mark.slow
class TestInChromium:
    """Each strategy driven by a real page."""

    @pytest.mark.asyncio
    async def test_fetch_authorization_header(self, site, tmp_path):
        script = f"fetch('/api/items', {{headers: {{Authorization: 'Bearer {HEADER_TOKEN}'}}}});"
        received = await _capture_in_chromium(site, tmp_path, {"/": _html(script)}, "/")
        credential = _only(received)
        assert credential.kind == CredentialKind.OPAQUE_OR_BEARER
        assert credential.value == HEADER_TOKEN

    @pytest.mark.asyncio
    async def test_xhr_authorization_header(self, site, tmp_path):
        script = (
            "var xhr = new XMLHttpRequest(); xhr.open('GET', '/api/items');"
            f"xhr.setRequestHeader('Authorization', 'Bearer {HEADER_TOKEN}'); xhr.send();"
        )
        received = await _capture_in_chromium(site, tmp_path, {"/": _html(script)}, "/")
        assert _only(received).value == HEADER_TOKEN

    @pytest.mark.asyncio
    async def test_auth_response_body(self, site, tmp_path):
        received = await _capture_in_chromium(
            site, tmp_path,
            {"/": _html("fetch('/api/auth/login', {method: 'POST'});")}, "/",
            api={"/api/auth/login": {"user": {"id": 7, "access_token": RESPONSE_TOKEN}}},
        )
        credential = _only(received)
        assert credential.kind == CredentialKind.OPAQUE_OR_BEARER
        assert credential.value == RESPONSE_TOKEN

    @pytest.mark.asyncio
    async def test_storage_scan(self, site, tmp_path):
        script = f"localStorage.setItem('session', '{STORED_JWT}');"
        received = await _capture_in_chromium(site, tmp_path, {"/": _html(script)}, "/")
        credential = _only(received)
        assert credential.kind == CredentialKind.OPAQUE_OR_BEARER
        assert credential.value == STORED_JWT

    @pytest.mark.asyncio
    async def test_identifier_from_profile_path(self, site, tmp_path):
        received = await _capture_in_chromium(site, tmp_path, {"/alice": _html()}, "/alice")
        credential = _only(received)
        assert credential.kind == CredentialKind.TAGGED_IDENTIFIER
        assert credential.value == "alice"

    @pytest.mark.asyncio
    async def test_nothing_recovered_on_login_path(self, site, tmp_path):
        next_data = json.dumps({"props": {"pageProps": {"username": "alice"}}})
        head = f'<script id="__NEXT_DATA__" type="application/json">{next_data}</script>'
        received = await _capture_in_chromium(
            site, tmp_path, {"/login/alice": _html(head=head)}, "/login/alice", wait=2.0
        )
        assert received == []

    @pytest.mark.asyncio
    async def test_identifier_from_hydration_data(self, site, tmp_path):
        next_data = json.dumps({"props": {"pageProps": {"viewer": {"username": "bob"}}}})
        head = f'<script id="__NEXT_DATA__" type="application/json">{next_data}</script>'
        received = await _capture_in_chromium(site, tmp_path, {"/": _html(head=head)}, "/")
        assert _only(received).value == "bob"

    @pytest.mark.asyncio
    async def test_identifier_from_profile_link(self, site, tmp_path):
        body = '<nav><a href="/help">Help</a><a href="/carol">Profile</a></nav>'
        received = await _capture_in_chromium(site, tmp_path, {"/": _html(body=body)}, "/")
        assert _only(received).value == "carol"

    @pytest.mark.asyncio
    async def test_identifier_from_global_state(self, site, tmp_path):
        script = "window.__INITIAL_STATE__ = {session: {user: {username: 'dave'}}};"
        received = await _capture_in_chromium(site, tmp_path, {"/": _html(script)}, "/")
        assert _only(received).value == "dave"

    @pytest.mark.asyncio
    async def test_path_beats_hydration_data(self, site, tmp_path):
        next_data = json.dumps({"props": {"pageProps": {"username": "bob"}}})
        head = f'<script id="__NEXT_DATA__" type="application/json">{next_data}</script>'
        received = await _capture_in_chromium(site, tmp_path, {"/alice": _html(head=head)}, "/alice")
        assert _only(received).value == "alice"

    @pytest.mark.asyncio
    async def test_stored_jwt_beats_profile_path(self, site, tmp_path):
        """The periodic scan never fires here; the scan before identifier recovery finds the JWT."""
        script = f"localStorage.setItem('session', '{STORED_JWT}');"
        received = await _capture_in_chromium(
            site, tmp_path, {"/alice": _html(script)}, "/alice", scan_interval=60
        )
        credential = _only(received)
        assert credential.kind == CredentialKind.OPAQUE_OR_BEARER
        assert credential.value == STORED_JWT
