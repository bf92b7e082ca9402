"""
Ephemeral loopback listener that receives the captured credential.

The injected browser script reports candidates by requesting

    GET http://127.0.0.1:<port>/token?t=<percent-encoded candidate> HTTP/1.1

This module owns the other end of that call. It is not a general
HTTP server:
  - It binds 127.0.0.1 on port 0, so the OS picks a free port and nothing
    outside the machine can reach it.
  - Each connection gets exactly one bounded read. Only the request line is
    parsed; headers and body are ignored.
  - Every connection is answered with the same empty 200 and a permissive CORS
    header, valid candidate or not, so the browser never reports an error or
    retries.
  - The first candidate that passes validator.is_plausible() is emitted, the
    accept loop exits, and the listening socket is closed after a short grace
    delay. Later connections are never accepted.

The accept loop races the next connection against the cancellation event with
asyncio.wait(FIRST_COMPLETED). Cancellation is therefore only observed between
connections: one already being handled is allowed to finish.

Anything that goes wrong with a single connection (garbage bytes, a client that
never sends, a reset) is logged at debug level and ignored. Arbitrary local
traffic on the port must not be able to end the session.

Usage:
    server = CallbackServer(on_capture=handle, tag_prefix="SITE_ID:")
    port = await server.start()
    ...
    server.cancel()
    await server.wait_closed()
"""

import asyncio
import inspect
import socket
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import unquote, urlsplit

from loguru import logger

from .errors import SetupError
from .schemas import CaptureStatus, Credential
from .validator import DEFAULT_TAG_PREFIX, classify, mask

LOOPBACK_HOST = "127.0.0.1"

# Path and query parameter the browser script reports to
CALLBACK_PATH = "/token"
CANDIDATE_PARAM = "t"

# A single buffered read of at most this many bytes per connection
MAX_REQUEST_BYTES = 8192

# Seconds to wait for a client to send its request (and to accept our reply)
READ_TIMEOUT = 5.0

# Seconds between accepting a credential and closing the listening socket,
# so the reply to the winning request is flushed first
SHUTDOWN_GRACE = 0.25

LISTEN_BACKLOG = 16

# Sent to every client regardless of what it asked for.
# Access-Control-Allow-Private-Network answers Chromium's private network
# access preflight for requests from a public HTTPS page to loopback.
RESPONSE = (
    b"HTTP/1.1 200 OK\r\n"
    b"Access-Control-Allow-Origin: *\r\n"
    b"Access-Control-Allow-Private-Network: true\r\n"
    b"Content-Length: 0\r\n"
    b"Connection: close\r\n"
    b"\r\n"
)

CaptureHandler = Callable[[Credential], Union[None, Awaitable[None]]]


def extract_candidate(data: bytes) -> Optional[str]:
    """Pull the percent-decoded candidate out of a raw request.

    Args:
        data: Bytes from the single read of one connection. May be truncated.

    Returns:
        str | None: The decoded value of the "t" query parameter on a request
                    for /token, or None if the request line is unusable.
    """
    if not data:
        return None

    # latin-1 maps every byte, so decoding itself can never fail
    request_line = data.decode("latin-1").splitlines()[0] if data.strip() else ""
    parts = request_line.split()
    if len(parts) < 2:
        return None

    target = urlsplit(parts[1])
    if target.path != CALLBACK_PATH:
        return None

    for pair in target.query.split("&"):
        name, sep, value = pair.partition("=")
        if name == CANDIDATE_PARAM and sep:
            # Percent-decoding only: a literal "+" stays a "+"
            return unquote(value)
    return None


class CallbackServer:
    """Single-use loopback listener for one capture session.

    Attributes:
        on_capture: Called once with the accepted Credential. May be a plain
                    function or a coroutine function.
        tag_prefix: Prefix marking a tagged identifier for validation.
        status: IDLE before start(), LISTENING while accepting, then CAPTURED
                or CANCELLED.
        credential: The accepted credential, once there is one.
    """

    def __init__(
        self,
        on_capture: Optional[CaptureHandler] = None,
        tag_prefix: str = DEFAULT_TAG_PREFIX,
        host: str = LOOPBACK_HOST,
        read_timeout: float = READ_TIMEOUT,
        grace_delay: float = SHUTDOWN_GRACE,
    ):
        self.on_capture = on_capture
        self.tag_prefix = tag_prefix
        self.host = host
        self.read_timeout = read_timeout
        self.grace_delay = grace_delay
        self.status = CaptureStatus.IDLE
        self.credential: Optional[Credential] = None
        self._sock: Optional[socket.socket] = None
        self._port: Optional[int] = None
        self._cancelled = asyncio.Event()
        self._socket_closed = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def port(self) -> Optional[int]:
        """The bound loopback port, or None before start()."""
        return self._port

    @property
    def cancellation(self) -> asyncio.Event:
        """The single-use event that stops the accept loop when set."""
        return self._cancelled

    @property
    def is_listening(self) -> bool:
        return self.status == CaptureStatus.LISTENING

    async def start(self) -> int:
        """Bind the loopback listener and start the accept loop in the background.

        Returns:
            int: The OS-assigned port.

        Raises:
            SetupError: If the server was already started or the socket cannot be bound.
        """
        if self.status != CaptureStatus.IDLE:
            raise SetupError(f"Callback server already used (status: {self.status.value})")

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.host, 0))
            sock.listen(LISTEN_BACKLOG)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise SetupError(f"Could not bind callback listener on {self.host}: {e}") from e

        self._sock = sock
        self._port = sock.getsockname()[1]
        self.status = CaptureStatus.LISTENING
        self._task = asyncio.create_task(self._accept_loop(), name=f"callback-server-{self._port}")
        logger.info(f"Callback server listening on {self.host}:{self._port}")
        return self._port

    def cancel(self):
        """Stop accepting without emitting. Safe to call at any time, more than once."""
        if self.status in (CaptureStatus.IDLE, CaptureStatus.LISTENING):
            self.status = CaptureStatus.CANCELLED
            logger.info(f"Callback server on port {self._port} cancelled")
        self._cancelled.set()
        if self._task is None:
            self._close_socket()

    async def wait_closed(self):
        """Wait until the accept loop has exited and the port is released.

        Called from inside on_capture, which runs on the accept task itself, it
        releases the port at once instead (the reply has already been sent).
        """
        if self._task is not None and self._task is asyncio.current_task():
            self._close_socket()
            return
        if self._task is not None:
            await asyncio.wait({self._task})
        await self._socket_closed.wait()

    async def _accept_loop(self):
        loop = asyncio.get_running_loop()
        cancel_wait = asyncio.ensure_future(self._cancelled.wait())
        captured = False
        try:
            while True:
                accept = asyncio.ensure_future(loop.sock_accept(self._sock))
                done, _ = await asyncio.wait(
                    {accept, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )

                if cancel_wait in done:
                    _discard_accept(accept)
                    return

                try:
                    conn, _addr = accept.result()
                except OSError as e:
                    logger.debug(f"Callback accept failed: {e}")
                    continue

                try:
                    credential = await self._handle_connection(conn)
                except Exception as e:
                    logger.debug(f"Callback connection error ignored: {e!r}")
                    continue

                if self._cancelled.is_set():
                    # Cancelled while this connection was in flight
                    return

                if credential is not None:
                    captured = True
                    await self._emit(credential)
                    loop.call_later(self.grace_delay, self._close_socket)
                    return
        finally:
            cancel_wait.cancel()
            if not captured:
                self._close_socket()

    async def _handle_connection(self, conn: socket.socket) -> Optional[Credential]:
        """Read once, always answer 200, then validate whatever arrived."""
        loop = asyncio.get_running_loop()
        data = b""
        with conn:
            conn.setblocking(False)
            try:
                data = await asyncio.wait_for(
                    loop.sock_recv(conn, MAX_REQUEST_BYTES), timeout=self.read_timeout
                )
            except (OSError, asyncio.TimeoutError) as e:
                logger.debug(f"Callback read failed: {e!r}")
            try:
                await asyncio.wait_for(loop.sock_sendall(conn, RESPONSE), timeout=self.read_timeout)
            except (OSError, asyncio.TimeoutError) as e:
                logger.debug(f"Callback reply failed: {e!r}")

        candidate = extract_candidate(data)
        if candidate is None:
            return None

        credential = classify(candidate, self.tag_prefix)
        if credential is None:
            logger.debug(f"Ignoring implausible candidate: {mask(candidate)}")
        return credential

    async def _emit(self, credential: Credential):
        self.credential = credential
        self.status = CaptureStatus.CAPTURED
        logger.info(
            f"Captured {credential.kind.value} credential on port {self._port}: {mask(credential.value)}"
        )
        if self.on_capture is None:
            return
        try:
            result = self.on_capture(credential)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Capture handler raised")

    def _close_socket(self):
        if self._sock is not None:
            self._sock.close()
            self._sock = None
            logger.info(f"Callback server on port {self._port} closed")
        self._socket_closed.set()


def _discard_accept(accept: asyncio.Future):
    """Cancel a pending accept, closing the connection if it raced in anyway."""
    if not accept.done():
        accept.cancel()
        return
    if accept.cancelled() or accept.exception() is not None:
        return
    conn, _addr = accept.result()
    conn.close()
