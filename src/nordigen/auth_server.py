"""
Local callback listener for the bank consent handshake.

After the user authenticates at the bank, the provider redirects the
browser to a locally hosted URL carrying the requisition reference in the
query string (``?ref=...``). This module captures that single request
without running a general-purpose web server.

IMPORTANT: The listener is single-use. It accepts exactly one connection,
answers it with a static confirmation page and closes the socket,
whether or not the request carried a usable reference.
"""

import logging
import socket
import threading
import time
from typing import Dict, List, Optional

from .exceptions import (
    BindError,
    CallbackCancelledError,
    CallbackError,
    CallbackTimeoutError,
    ProtocolError,
)

logger = logging.getLogger(__name__)

CONFIRMATION_RESPONSE = "\r\n".join(
    [
        "HTTP/1.1 200 OK",
        "Content-Type: text/html; charset=UTF-8",
        "Connection: close",
        "",
        "<html>",
        "<body>",
        "<h2>Thank You!</h2>",
        "<p>You can now go back to the tool :)</p>",
        "</body>",
        "</html>",
        "",
    ]
).encode("utf-8")

# Seconds between cancellation checks while waiting for a connection.
POLL_INTERVAL = 0.25
# Seconds a connected client has to finish sending its headers.
READ_TIMEOUT = 10.0
MAX_HEADER_LINES = 100
MAX_LINE_LENGTH = 8192


def parse_query(query: str) -> Dict[str, str]:
    """
    Parse ``&``-separated ``key=value`` pairs.

    Pairs that do not split into exactly two parts are skipped. Values are
    kept as sent (no percent-decoding); later duplicates win.
    """
    params: Dict[str, str] = {}
    for pair in query.split("&"):
        parts = pair.split("=")
        if len(parts) != 2:
            continue
        key, value = parts
        params[key] = value
    return params


def parse_callback_request(lines: List[str]) -> str:
    """
    Extract the ``ref`` parameter from a callback request.

    Args:
        lines: Request line followed by header lines (no terminators)

    Returns:
        Value of the ``ref`` query parameter

    Raises:
        ProtocolError: If the request is not a GET with a ``ref`` parameter
    """
    if not lines:
        raise ProtocolError("empty request")

    request_line = lines[0].split()
    if len(request_line) < 3:
        raise ProtocolError(f"unexpected request line: {lines[0]!r}")

    method, target = request_line[0], request_line[1]
    if method.upper() != "GET":
        raise ProtocolError(f"unexpected method: {method}")

    pos = target.find("?")
    if pos < 0:
        raise ProtocolError("no parameters provided")

    params = parse_query(target[pos + 1:])
    if "ref" not in params:
        raise ProtocolError("missing ref: callback did not provide a reference")
    return params["ref"]


def read_request_head(conn: socket.socket) -> List[str]:
    """
    Read the request line and headers, stopping at the first blank line.

    The body, if any, is never read. A connection closed before the blank
    line yields whatever was received.
    """
    lines: List[str] = []
    with conn.makefile("rb") as stream:
        while len(lines) < MAX_HEADER_LINES:
            raw = stream.readline(MAX_LINE_LENGTH)
            if not raw:
                break
            line = raw.decode("latin-1").rstrip("\r\n")
            if not line:
                break
            lines.append(line)
    return lines


class CallbackListener:
    """
    Single-shot plaintext HTTP listener on a loopback address.

    Lifecycle: ``bind()`` then ``wait()``. After ``wait()`` returns or
    raises, the socket is closed and the instance cannot be reused.

    Example:
        with CallbackListener("127.0.0.1", 1337) as listener:
            ref = listener.wait(timeout=300)
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 1337):
        self.host = host
        self.port = port
        self._sock: Optional[socket.socket] = None
        self._used = False

    def __enter__(self) -> "CallbackListener":
        if self._sock is None:
            self.bind()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def bound(self) -> bool:
        return self._sock is not None

    def bind(self) -> None:
        """
        Start listening on the configured address.

        Raises:
            BindError: If the address cannot be bound (e.g. port in use)
            CallbackError: If the listener was already used
        """
        if self._used:
            raise CallbackError("callback listener cannot be reused")
        if self._sock is not None:
            return

        try:
            sock = socket.create_server((self.host, self.port), backlog=1)
        except OSError as e:
            logger.error(f"Could not bind callback listener to {self.host}:{self.port}: {e}")
            raise BindError(f"Unable to listen on {self.host}:{self.port}: {e}") from e

        sock.settimeout(POLL_INTERVAL)
        self._sock = sock
        # Port 0 asks the OS for a free port
        self.port = sock.getsockname()[1]
        logger.info(f"Callback listener bound to {self.host}:{self.port}")

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
            logger.debug("Callback listener closed")

    def _accept(
        self, timeout: Optional[float], cancel_event: Optional[threading.Event]
    ) -> socket.socket:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise CallbackCancelledError("waiting for callback was cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                raise CallbackTimeoutError(
                    f"No callback received within {timeout} seconds"
                )
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                continue
            logger.debug(f"Accepted callback connection from {addr[0]}:{addr[1]}")
            return conn

    def _respond(self, conn: socket.socket) -> None:
        try:
            conn.sendall(CONFIRMATION_RESPONSE)
        except OSError as e:
            logger.warning(f"Error sending callback response: {e}")

    def wait(
        self,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """
        Wait for the bank redirect and return its reference.

        Binds first if ``bind()`` was not called. Exactly one connection is
        accepted; it always receives the confirmation page.

        Args:
            timeout: Seconds to wait for a connection (None waits forever)
            cancel_event: Set from another thread to abandon the wait

        Returns:
            Value of the ``ref`` query parameter

        Raises:
            ProtocolError: If the request was malformed or lacked ``ref``
            CallbackTimeoutError: If no connection arrived in time
            CallbackCancelledError: If cancel_event was set
            BindError: If binding was needed and failed
            CallbackError: If the listener was already used
        """
        if self._used:
            raise CallbackError("callback listener cannot be reused")
        self.bind()
        self._used = True

        try:
            logger.info(f"Waiting for callback on {self.host}:{self.port}")
            conn = self._accept(timeout, cancel_event)
        except CallbackError:
            self.close()
            raise

        # No further connections are accepted
        self.close()

        try:
            conn.settimeout(READ_TIMEOUT)
            try:
                lines = read_request_head(conn)
            except OSError as e:
                lines = []
                logger.warning(f"Error reading callback request: {e}")

            try:
                ref = parse_callback_request(lines)
            except ProtocolError as e:
                logger.error(f"Error obtaining ref: {e}")
                self._respond(conn)
                raise

            self._respond(conn)
            logger.info("Callback reference received")
            return ref
        finally:
            conn.close()
