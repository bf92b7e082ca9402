"""
Outbound HTTP requests made from the user's machine on the host's behalf.

Some target sites reject requests from datacenter IPs, so the host routes a few
of its own API calls through here instead. This is unrelated to credential
capture and lives beside it only because it shares the same command surface.
"""

from typing import Optional

import httpx
from loguru import logger

from .errors import FetchError
from .schemas import FetchResult

FETCH_TIMEOUT = 20.0
MAX_REDIRECTS = 5

# Methods sent as-is; anything else is sent as GET
SUPPORTED_METHODS = ("GET", "POST", "PUT")


async def native_fetch(
    url: str,
    method: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
    body: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> FetchResult:
    """Perform one request and return its status, content type and text body.

    Args:
        url: Absolute URL.
        method: HTTP method (case-insensitive). Defaults to GET.
        headers: Extra request headers.
        body: Raw request body.
        client: Optional client to reuse (mainly for tests). A short-lived one
                is created otherwise.

    Returns:
        FetchResult: Status code, Content-Type header ("" if absent) and body text.

    Raises:
        FetchError: If the request cannot be sent or the body cannot be read.
    """
    method = (method or "GET").upper()
    if method not in SUPPORTED_METHODS:
        method = "GET"

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(
            timeout=FETCH_TIMEOUT,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
        )

    try:
        logger.info(f"Native fetch: {method} {url}")
        try:
            request = client.build_request(
                method, url, headers=headers or None, content=body.encode("utf-8") if body is not None else None
            )
            response = await client.send(request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FetchError(f"request: {e}") from e

        try:
            await response.aread()
            text = response.text
        except httpx.HTTPError as e:
            raise FetchError(f"body: {e}") from e
        finally:
            await response.aclose()

        return FetchResult(
            status=response.status_code,
            content_type=response.headers.get("content-type", ""),
            body=text,
        )
    finally:
        if owns_client:
            await client.aclose()
