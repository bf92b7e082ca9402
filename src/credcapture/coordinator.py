"""
Capture session lifecycle.

SessionCoordinator is the host-facing object. It keeps a single session slot:

    open_session()  cancel the previous session (listener and window), bind a
                    fresh loopback listener, open the capture window with the
                    capture script parameterized by the new port
    navigate(url)   send the window to a URL on the target site (e.g. a magic
                    sign-in link pasted by the user)
    rescan()        run the manual identifier scan in the window
    submit(token)   deliver a token pasted by hand through the same channel
    cancel()        stop the listener and close the window

When the listener accepts a credential, every registered listener (the host's
event channel) is called once with it and the window is closed shortly after.

Concurrency:
  - The session slot is shared between command coroutines and the listener's
    accept task. It is guarded by an asyncio.Lock that is only held for plain
    reads and writes, never across an await on the browser or the network.
  - open_session() and cancel() are additionally serialized with each other so
    that two overlapping "start" requests cannot both end up listening. The
    accept task never takes that lock.
  - Credentials are dispatched to host listeners from a separate task, so a
    listener may itself call open_session(), cancel() or close().
"""

import asyncio
import inspect
from typing import Callable, Optional
from urllib.parse import urlsplit
from uuid import uuid4

from loguru import logger

from .browser import BrowserManager
from .callback import CallbackServer
from .errors import CaptureError, SetupError, StateError, ValidationError
from .instrumentation import SCAN_INTERVAL, SETTLE_DELAY, build_capture_script, build_rescan_script
from .schemas import TERMINAL_STATUSES, CaptureStatus, Credential, SessionInfo, SiteConfig
from .surface import CaptureSurface
from .validator import classify, mask, normalize

# Seconds between a capture and closing the window, so the user sees the page settle
SURFACE_CLOSE_DELAY = 1.5

CredentialListener = Callable[[Credential], object]

ACTIVE_SESSION = "an active capture session"
OPEN_WINDOW = "an open capture window"


class CaptureSession:
    """One capture attempt: its listener, its window and where it stands.

    Attributes:
        id: Opaque handle for logs and the RPC surface.
        server: The session's loopback listener.
        surface: The capture window, once opened.
        status: IDLE until the listener binds, then LISTENING, then terminal.
        credential: The credential delivered by this session, if any.
    """

    def __init__(self, server: CallbackServer):
        self.id = uuid4().hex[:12]
        self.server = server
        self.surface: Optional[CaptureSurface] = None
        self.status = CaptureStatus.IDLE
        self.credential: Optional[Credential] = None

    @property
    def port(self) -> Optional[int]:
        return self.server.port


class SessionCoordinator:
    """Owns the single capture session and relays its credential to the host.

    Attributes:
        site (SiteConfig): The target site.
        browser: Opens capture windows. A BrowserManager unless injected.
    """

    def __init__(
        self,
        site: SiteConfig,
        browser: Optional[BrowserManager] = None,
        scan_interval: float = SCAN_INTERVAL,
        settle_delay: float = SETTLE_DELAY,
        close_delay: float = SURFACE_CLOSE_DELAY,
    ):
        self.site = site
        self.browser = browser if browser is not None else BrowserManager()
        self.scan_interval = scan_interval
        self.settle_delay = settle_delay
        self.close_delay = close_delay
        self._session: Optional[CaptureSession] = None
        self._lock = asyncio.Lock()
        self._command_lock = asyncio.Lock()
        self._listeners: list[CredentialListener] = []
        self._waiters: set[asyncio.Future] = set()
        self._background: set[asyncio.Task] = set()

    # ── Host event channel ───────────────────────────────────────────

    def add_listener(self, listener: CredentialListener):
        """Register a callable (plain or async) to receive each captured credential."""
        self._listeners.append(listener)

    def remove_listener(self, listener: CredentialListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def wait_for_credential(self, timeout: Optional[float] = None) -> Credential:
        """Wait for the next credential delivered to the host.

        Raises:
            asyncio.TimeoutError: If nothing arrives within timeout seconds.
        """
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.add(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout)
        finally:
            self._waiters.discard(waiter)

    async def _dispatch(self, credential: Credential):
        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.set_result(credential)
        for listener in list(self._listeners):
            try:
                result = listener(credential)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Credential listener {listener!r} failed")

    # ── Commands ─────────────────────────────────────────────────────

    async def open_session(self) -> SessionInfo:
        """Start a new capture session, replacing any previous one.

        Returns:
            SessionInfo: Snapshot of the new session (status LISTENING).

        Raises:
            SetupError: If the listener cannot bind or the capture window cannot be opened.
        """
        async with self._command_lock:
            async with self._lock:
                previous = self._session
            if previous is not None:
                await self._retire(previous, CaptureStatus.CANCELLED)

            server = CallbackServer(tag_prefix=self.site.tag_prefix)
            session = CaptureSession(server)
            server.on_capture = lambda credential: self._on_capture(session, credential)

            port = await server.start()
            async with self._lock:
                session.status = CaptureStatus.LISTENING
                self._session = session
            logger.info(f"Capture session {session.id} listening on port {port} for {self.site.name}")

            script = build_capture_script(
                port, self.site, scan_interval=self.scan_interval, settle_delay=self.settle_delay
            )
            try:
                surface = await self.browser.open_surface(self.site.login_url, script)
            except Exception as e:
                server.cancel()
                async with self._lock:
                    if session.status == CaptureStatus.LISTENING:
                        session.status = CaptureStatus.CANCELLED
                await server.wait_closed()
                raise SetupError(f"Could not open capture window at {self.site.login_url}: {e}") from e

            async with self._lock:
                session.surface = surface
                captured_early = session.status == CaptureStatus.CAPTURED
            if captured_early:
                self._schedule_close(session)
            return self._snapshot(session)

    async def navigate(self, url: str):
        """Send the capture window to url, which must be on the target site.

        Raises:
            ValidationError: If url is not http(s) or not on the site's domain. Nothing changes.
            StateError: If there is no active session or its window is closed.
        """
        self.check_url(url)
        async with self._lock:
            session = self._session
        unmet = self._unmet_preconditions(session)
        if unmet:
            raise StateError("navigate", unmet)
        await session.surface.goto(url)
        await session.surface.bring_to_front()

    async def rescan(self) -> Optional[str]:
        """Run the manual identifier scan in the capture window.

        Returns:
            str | None: The identifier the scan sent, or None if it found nothing.

        Raises:
            StateError: If there is no active session or its window is closed.
                        No port is bound and nothing changes.
        """
        async with self._lock:
            session = self._session
        unmet = self._unmet_preconditions(session)
        if unmet:
            raise StateError("rescan", unmet)

        logger.info(f"Rescanning capture window for session {session.id}")
        script = build_rescan_script(session.port, self.site)
        try:
            found = await session.surface.evaluate(script)
        except Exception as e:
            raise CaptureError(f"Rescan failed: {e}") from e
        logger.info(f"Rescan {'found ' + repr(found) if found else 'found nothing'}")
        return found

    async def submit(self, token: str) -> Credential:
        """Deliver a token the user pasted by hand.

        A leading "Bearer " and surrounding whitespace are stripped. If a session
        is listening, the pasted token completes it like a capture would.

        Raises:
            ValidationError: If the token is not plausible.
        """
        candidate = normalize(token) if isinstance(token, str) else token
        credential = classify(candidate, self.site.tag_prefix)
        if credential is None:
            raise ValidationError("Not a plausible token: expected 20+ characters without whitespace")

        async with self._lock:
            session = self._session
            completes = session is not None and session.status == CaptureStatus.LISTENING
            if completes:
                session.status = CaptureStatus.CAPTURED
                session.credential = credential

        logger.info(f"Manual token submitted: {mask(credential.value)}")
        if completes:
            session.server.cancel()
            self._schedule_close(session)
        await self._dispatch(credential)
        return credential

    async def cancel(self):
        """Stop the active session's listener and close its window."""
        async with self._command_lock:
            async with self._lock:
                session = self._session
            if session is not None:
                await self._retire(session, CaptureStatus.CANCELLED)

    async def close(self):
        """Shut down: end the session (status CLOSED) and stop the browser."""
        async with self._command_lock:
            async with self._lock:
                session = self._session
            if session is not None:
                await self._retire(session, CaptureStatus.CLOSED)
        current = asyncio.current_task()
        for task in list(self._background):
            if task is not current:
                task.cancel()
        for waiter in list(self._waiters):
            waiter.cancel()
        await self.browser.stop()

    def status(self) -> SessionInfo:
        """Snapshot of the current (or most recent) session."""
        return self._snapshot(self._session)

    # ── Internals ────────────────────────────────────────────────────

    def check_url(self, url: str):
        """Raise ValidationError unless url is http(s) on the site's domain or a subdomain."""
        try:
            parts = urlsplit(url)
            host = (parts.hostname or "").lower()
            # Fully qualified form ("example.com.")
            if host.endswith("."):
                host = host[:-1]
        except ValueError as e:
            raise ValidationError(f"Invalid URL: {url!r}") from e

        domain = self.site.domain.lower().lstrip(".")
        if parts.scheme not in ("http", "https"):
            raise ValidationError(f"Only http(s) URLs can be opened, got {url!r}")
        if host != domain and not host.endswith("." + domain):
            raise ValidationError(f"URL must be on {domain}, got host {host or '(none)'!r}")

    def _unmet_preconditions(self, session: Optional[CaptureSession]) -> list[str]:
        unmet = []
        if session is None or session.status != CaptureStatus.LISTENING:
            unmet.append(ACTIVE_SESSION)
        if session is None or session.surface is None or not session.surface.is_open:
            unmet.append(OPEN_WINDOW)
        return unmet

    async def _on_capture(self, session: CaptureSession, credential: Credential):
        async with self._lock:
            current = self._session is session and session.status == CaptureStatus.LISTENING
            if current:
                session.status = CaptureStatus.CAPTURED
                session.credential = credential
        if not current:
            logger.debug(f"Dropping credential from superseded session {session.id}")
            return

        logger.info(f"Session {session.id} captured a {credential.kind.value} credential")
        self._schedule_close(session)
        # Off the listener's accept task: host listeners may start or cancel sessions
        self._spawn(self._dispatch(credential))

    async def _retire(self, session: CaptureSession, status: CaptureStatus):
        session.server.cancel()
        async with self._lock:
            if session.status not in TERMINAL_STATUSES:
                session.status = status
        if session.surface is not None:
            await session.surface.close()
        await session.server.wait_closed()
        logger.info(f"Session {session.id} ended ({session.status.value})")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _schedule_close(self, session: CaptureSession):
        self._spawn(self._close_later(session))

    async def _close_later(self, session: CaptureSession):
        await asyncio.sleep(self.close_delay)
        if session.surface is not None:
            await session.surface.close()

    def _snapshot(self, session: Optional[CaptureSession]) -> SessionInfo:
        if session is None:
            return SessionInfo(site=self.site.name)
        return SessionInfo(
            id=session.id,
            status=session.status,
            port=session.port,
            site=self.site.name,
            surface_open=session.surface is not None and session.surface.is_open,
        )
