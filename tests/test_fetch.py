"""
Tests for native_fetch, using httpx.MockTransport instead of the network.

Run:
    python -m pytest tests/test_fetch.py -v
"""

import json

import httpx
import pytest

from credcapture.errors import FetchError
from credcapture.fetch import native_fetch


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)


class TestNativeFetch:
    @pytest.mark.asyncio
    async def test_get(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        async with _client(handler) as client:
            result = await native_fetch("https://api.example/items", client=client)

        assert result.status == 200
        assert result.content_type == "application/json"
        assert json.loads(result.body) == {"ok": True}
        assert seen[0].method == "GET"

    @pytest.mark.asyncio
    async def test_post_with_headers_and_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, text="created", headers={"content-type": "text/plain"})

        async with _client(handler) as client:
            result = await native_fetch(
                "https://api.example/items",
                method="post",
                headers={"Authorization": "Bearer abc"},
                body='{"name": "x"}',
                client=client,
            )

        assert result.status == 201
        assert result.body == "created"
        assert seen[0].method == "POST"
        assert seen[0].headers["authorization"] == "Bearer abc"
        assert seen[0].content == b'{"name": "x"}'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,expected", [("PUT", "PUT"), ("DELETE", "GET"), ("patch", "GET"), (None, "GET")])
    async def test_method_mapping(self, method, expected):
        seen = []

        def handler(request):
            seen.append(request.method)
            return httpx.Response(204)

        async with _client(handler) as client:
            result = await native_fetch("https://api.example/", method=method, client=client)

        assert seen == [expected]
        assert result.content_type == ""
        assert result.body == ""

    @pytest.mark.asyncio
    async def test_error_status_is_returned_not_raised(self):
        async with _client(lambda request: httpx.Response(403, text="blocked")) as client:
            result = await native_fetch("https://api.example/", client=client)
        assert result.status == 403
        assert result.body == "blocked"

    @pytest.mark.asyncio
    async def test_follows_redirects(self):
        def handler(request):
            if request.url.path == "/old":
                return httpx.Response(302, headers={"location": "https://api.example/new"})
            return httpx.Response(200, text=request.url.path)

        async with _client(handler) as client:
            result = await native_fetch("https://api.example/old", client=client)
        assert result.body == "/new"

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(FetchError, match="^request:"):
                await native_fetch("https://api.example/", client=client)

    @pytest.mark.asyncio
    async def test_invalid_url(self):
        with pytest.raises(FetchError):
            await native_fetch("not a url")
