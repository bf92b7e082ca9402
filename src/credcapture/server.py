"""
Host-facing API server for credcapture.

Exposes the capture coordinator to a host application over local HTTP, with the
captured credential pushed as a Server-Sent Event.

Endpoints:
    GET    /health                 — Health check (returns {"status": "ok"})
    GET    /v1/version             — Package version
    GET    /v1/changelog           — Bundled changelog (markdown)
    GET    /v1/session             — Current session snapshot
    POST   /v1/session             — Start a capture session (replaces any previous one)
    DELETE /v1/session             — Cancel the capture session
    POST   /v1/session/navigate    — {"url": ...} open a URL on the target site in the capture window
    POST   /v1/session/rescan      — Run the manual identifier scan
    POST   /v1/session/token       — {"token": ...} deliver a token pasted by the user
    GET    /v1/events              — SSE stream; one "credential_captured" event per capture
    POST   /v1/fetch               — Outbound request from this machine (see fetch.py)

Errors use one JSON envelope: {"error": {"message", "type", "code"}} with
400 for rejected input, 409 for unmet preconditions and 500 for setup failures.

Architecture:
    - configure() creates the SessionCoordinator before uvicorn starts. The
      browser itself is launched lazily by the first POST /v1/session.
    - Each /v1/events client gets its own queue, fed by a coordinator listener.

Usage:
    from credcapture.server import app, configure
    import uvicorn

    configure(site)
    uvicorn.run(app, host="127.0.0.1", port=5125)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from loguru import logger
from pydantic import ValidationError as ModelValidationError
from sse_starlette.sse import EventSourceResponse
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route

from . import __version__, read_changelog
from .coordinator import SessionCoordinator
from .errors import CaptureError, FetchError, SetupError, StateError, ValidationError
from .fetch import native_fetch
from .schemas import Credential, FetchRequest, NavigateRequest, SiteConfig, TokenRequest

# ── Server state (set by configure() before uvicorn starts) ──────────

_coordinator: Optional[SessionCoordinator] = None

# One queue per connected /v1/events client
_subscribers: set[asyncio.Queue] = set()

# Seconds between SSE keep-alive pings
PING_INTERVAL = 15


def configure(site: SiteConfig, coordinator: Optional[SessionCoordinator] = None):
    """Create the coordinator the endpoints operate on.

    Must be called before the server starts.

    Args:
        site: The target site for capture sessions.
        coordinator: Optional pre-built coordinator (e.g. with a custom browser).
    """
    global _coordinator
    _coordinator = coordinator or SessionCoordinator(site)
    _coordinator.add_listener(_broadcast)


def _broadcast(credential: Credential):
    """Coordinator listener: fan the credential out to every SSE client."""
    for queue in list(_subscribers):
        queue.put_nowait(credential)


@asynccontextmanager
async def _lifespan(app):
    """Close the coordinator (and the browser) when the server stops."""
    yield
    if _coordinator is not None:
        await _coordinator.close()
        logger.info("Coordinator closed")


def _error_response(message: str, status_code: int = 500, error_type: str = "server_error",
                    code: str = "internal_error") -> JSONResponse:
    """Create an error response in the common JSON envelope."""
    return JSONResponse(
        {"error": {"message": message, "type": error_type, "code": code}},
        status_code=status_code,
    )


def _capture_error_response(error: CaptureError) -> JSONResponse:
    """Map a capture error to its status code."""
    if isinstance(error, ValidationError):
        return _error_response(str(error), 400, "invalid_request_error", "validation_failed")
    if isinstance(error, StateError):
        return _error_response(str(error), 409, "invalid_state_error", "precondition_failed")
    if isinstance(error, SetupError):
        return _error_response(str(error), 500, "server_error", "setup_failed")
    return _error_response(str(error), 500)


def _require_coordinator() -> SessionCoordinator:
    if _coordinator is None:
        raise SetupError("Server is not configured: call configure() before starting it")
    return _coordinator


async def _handle_capture_error(request: Request, exc: CaptureError) -> JSONResponse:
    """Fallback for capture errors raised outside an endpoint's own try block."""
    return _capture_error_response(exc)


async def _parse(request: Request, model):
    try:
        return model(**(await request.json()))
    except (ValueError, TypeError, ModelValidationError) as e:
        raise ValidationError(f"Invalid request body: {e}") from e


# ── Endpoints ────────────────────────────────────────────────────────

async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def version(request: Request) -> JSONResponse:
    return JSONResponse({"version": __version__})


async def changelog(request: Request) -> PlainTextResponse:
    return PlainTextResponse(read_changelog(), media_type="text/markdown")


async def get_session(request: Request) -> JSONResponse:
    return JSONResponse(_require_coordinator().status().model_dump(mode="json"))


async def open_session(request: Request) -> JSONResponse:
    """Start a capture session; any previous session is cancelled first."""
    try:
        info = await _require_coordinator().open_session()
    except CaptureError as e:
        logger.error(f"Could not start capture session: {e}")
        return _capture_error_response(e)
    return JSONResponse(info.model_dump(mode="json"), status_code=201)


async def cancel_session(request: Request) -> JSONResponse:
    coordinator = _require_coordinator()
    await coordinator.cancel()
    return JSONResponse(coordinator.status().model_dump(mode="json"))


async def navigate(request: Request) -> JSONResponse:
    try:
        body = await _parse(request, NavigateRequest)
        await _require_coordinator().navigate(body.url)
    except CaptureError as e:
        logger.warning(f"Navigate rejected: {e}")
        return _capture_error_response(e)
    return JSONResponse({"status": "ok"})


async def rescan(request: Request) -> JSONResponse:
    try:
        found = await _require_coordinator().rescan()
    except CaptureError as e:
        logger.warning(f"Rescan rejected: {e}")
        return _capture_error_response(e)
    return JSONResponse({"status": "ok", "identifier": found})


async def submit_token(request: Request) -> JSONResponse:
    try:
        body = await _parse(request, TokenRequest)
        credential = await _require_coordinator().submit(body.token)
    except CaptureError as e:
        return _capture_error_response(e)
    return JSONResponse({"status": "ok", "kind": credential.kind.value})


async def events(request: Request) -> EventSourceResponse:
    """Stream credential_captured events until the client disconnects."""
    queue: asyncio.Queue = asyncio.Queue()
    _subscribers.add(queue)

    async def event_generator():
        try:
            while True:
                credential = await queue.get()
                yield {
                    "event": "credential_captured",
                    "data": credential.model_dump_json(),
                }
        finally:
            _subscribers.discard(queue)

    return EventSourceResponse(event_generator(), ping=PING_INTERVAL)


async def fetch(request: Request) -> JSONResponse:
    try:
        body = await _parse(request, FetchRequest)
        result = await native_fetch(body.url, body.method, body.headers, body.body)
    except FetchError as e:
        return _error_response(str(e), 502, "upstream_error", "fetch_failed")
    except CaptureError as e:
        return _capture_error_response(e)
    return JSONResponse(result.model_dump())


# ── App ──────────────────────────────────────────────────────────────

app = Starlette(
    routes=[
        Route("/health", health, methods=["GET"]),
        Route("/v1/version", version, methods=["GET"]),
        Route("/v1/changelog", changelog, methods=["GET"]),
        Route("/v1/session", get_session, methods=["GET"]),
        Route("/v1/session", open_session, methods=["POST"]),
        Route("/v1/session", cancel_session, methods=["DELETE"]),
        Route("/v1/session/navigate", navigate, methods=["POST"]),
        Route("/v1/session/rescan", rescan, methods=["POST"]),
        Route("/v1/session/token", submit_token, methods=["POST"]),
        Route("/v1/events", events, methods=["GET"]),
        Route("/v1/fetch", fetch, methods=["POST"]),
    ],
    exception_handlers={CaptureError: _handle_capture_error},
    lifespan=_lifespan,
)
