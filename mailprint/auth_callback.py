"""Collect an OAuth authorization code from the browser redirect or the console."""

from __future__ import annotations

import enum
import logging
import queue
import select
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable
from urllib.parse import parse_qs, urlsplit

from .errors import AuthCancelled, AuthError, AuthTimeout

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 5.0
CALLBACK_PATH_TEMPLATE = "/auth/callback/{provider}"

# Reads one line, returning None once ``cancel`` is set.
ConsoleReader = Callable[[threading.Event], "str | None"]


class CallbackState(enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    CODE_RECEIVED = "code_received"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


def read_console_line(cancel: threading.Event, stream=None, poll_interval: float = 0.25) -> str | None:
    """Wait for a line on stdin without blocking past cancellation.

    Returns None when cancelled or at end of input, so a detached stdin
    leaves the HTTP listener as the only source.
    """
    stream = stream or sys.stdin
    while not cancel.is_set():
        ready, _, _ = select.select([stream], [], [], poll_interval)
        if ready:
            return stream.readline() or None
    return None


class _CallbackHandler(BaseHTTPRequestHandler):
    server: "_CallbackServer"

    def do_GET(self) -> None:  # noqa: N802 (http.server naming)
        url = urlsplit(self.path)
        if url.path != self.server.callback_path:
            self._respond(404, "Not found\n")
            return
        query = parse_qs(url.query)
        code = (query.get("code") or [""])[0].strip()
        expected = self.server.expected_state
        if expected is not None and (query.get("state") or [""])[0] != expected:
            self._respond(400, "Authentication state mismatch\n")
            self.server.deliver(("error", "callback state did not match the authorization request"))
            return
        if not code:
            self._respond(400, "Invalid authentication code\n")
            self.server.deliver(("error", "callback carried no authorization code"))
            return
        self._respond(200, "Successfully authenticated, you may close this tab\n")
        self.server.deliver(("code", code))

    def _respond(self, status: int, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("auth callback: " + format, *args)


class _CallbackServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(
        self,
        address,
        callback_path: str,
        expected_state: str | None,
        deliver: Callable[[tuple[str, str]], None],
    ) -> None:
        super().__init__(address, _CallbackHandler)
        self.callback_path = callback_path
        self.expected_state = expected_state
        self.deliver = deliver


class AuthCodeReceiver:
    """Race a loopback HTTP listener against console input for one code.

    Both sources feed a single queue; the first item wins and the other
    source is told to stop through ``cancel``. One instance serves one
    authentication attempt.
    """

    def __init__(
        self,
        provider: str,
        port: int = 8080,
        host: str = "127.0.0.1",
        console_reader: ConsoleReader | None = None,
        expected_state: str | None = None,
    ) -> None:
        self.expected_state = expected_state
        self.callback_path = CALLBACK_PATH_TEMPLATE.format(provider=provider)
        self.host = host
        self.port = port
        self.console_reader = console_reader or read_console_line
        self.state = CallbackState.IDLE
        self._results: queue.Queue[tuple[str, str]] = queue.Queue()
        self._cancel = threading.Event()
        self._server: _CallbackServer | None = None

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}{self.callback_path}"

    def start(self) -> None:
        """Bind the listener; lets callers learn the port before printing the URL."""
        if self.state is not CallbackState.IDLE:
            raise RuntimeError("an AuthCodeReceiver can only be used once")
        self._server = _CallbackServer(
            (self.host, self.port), self.callback_path, self.expected_state, self._deliver
        )
        self.port = self._server.server_address[1]
        threading.Thread(
            target=self._server.serve_forever, name="mailprint-auth-http", daemon=True
        ).start()
        threading.Thread(target=self._read_console, name="mailprint-auth-console", daemon=True).start()
        self.state = CallbackState.LISTENING
        logger.debug("Listening for the authorization callback on %s", self.redirect_uri)

    def await_code(self, timeout: float | None = None) -> str:
        if self.state is CallbackState.IDLE:
            self.start()
        elif self.state is not CallbackState.LISTENING:
            raise RuntimeError("an AuthCodeReceiver can only be used once")

        try:
            kind, value = self._results.get(timeout=timeout)
        except queue.Empty:
            self.state = CallbackState.TIMED_OUT
            raise AuthTimeout("no authorization code received in time") from None
        finally:
            self._stop()

        if kind == "code":
            self.state = CallbackState.CODE_RECEIVED
            return value
        self.state = CallbackState.CANCELLED
        if kind == "cancel":
            raise AuthCancelled(value)
        raise AuthError(value, remediation="Restart the authorization and approve access in the browser.")

    def _deliver(self, item: tuple[str, str]) -> None:
        if not self._cancel.is_set():
            self._results.put(item)

    def _read_console(self) -> None:
        line = self.console_reader(self._cancel)
        if line is None:
            return
        code = line.strip()
        if code:
            self._deliver(("code", code))
        else:
            self._deliver(("cancel", "authorization aborted from the console"))

    def _stop(self) -> None:
        self._cancel.set()
        server = self._server
        if server is None:
            return
        stopper = threading.Thread(target=server.shutdown, name="mailprint-auth-shutdown", daemon=True)
        stopper.start()
        stopper.join(SHUTDOWN_GRACE_SECONDS)
        if stopper.is_alive():
            logger.error("Authentication callback did not shut down within %.0fs", SHUTDOWN_GRACE_SECONDS)
        try:
            server.server_close()
        except OSError as exc:
            logger.error("Failed to shut down authentication callback: %s", exc)
