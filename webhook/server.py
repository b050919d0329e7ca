"""
Webhook acceptor for stooge.
Answers every POST with an empty 200 after launching the configured commands.
"""
from __future__ import annotations

import io
import re
import socket
import time
from dataclasses import dataclass, field
from typing import Optional

from flask import Blueprint, Flask, current_app, request
from werkzeug.serving import (
    BaseWSGIServer,
    WSGIRequestHandler,
    make_server,
    select_address_family,
)

from core.observability import (
    CorrelationContext,
    log_processing_result,
    log_webhook_event,
    logger,
    new_correlation_id,
)
from core.security import SIGNATURE_HEADER, validate_webhook_request
from core.spawner import CommandSpawner

# Request size limit (1MB max payload)
MAX_CONTENT_LENGTH = 1 * 1024 * 1024
MAX_HEADER_BYTES = 64 * 1024
LISTEN_BACKLOG = 128
RECV_SIZE = 64 * 1024

# A connection that has not sent a whole request by then is closed.
CLIENT_TIMEOUT = 10.0
MAX_PENDING_CLIENTS = 64
# Upper bound on writing a response once the request is in.
RESPONSE_TIMEOUT = 5.0

_CONTINUE = b"HTTP/1.1 100 Continue\r\n\r\n"
_EXPECT_LINE = re.compile(rb"^expect:[^\r\n]*\r?\n", re.IGNORECASE | re.MULTILINE)

bp = Blueprint("webhook", __name__)


@bp.route(
    "/",
    defaults={"path": ""},
    methods=["POST"],
    provide_automatic_options=False,
)
@bp.route("/<path:path>", methods=["POST"], provide_automatic_options=False)
def webhook_handler(path: str):
    """Launch every configured command, then acknowledge with an empty 200."""
    spawner: CommandSpawner = current_app.extensions["stooge.spawner"]
    secret: Optional[str] = current_app.config.get("WEBHOOK_SECRET")

    correlation_id = new_correlation_id(request.headers.get("X-GitHub-Delivery"))
    log_webhook_event(
        request.method,
        "/" + path,
        request.remote_addr,
        event_type=request.headers.get("X-GitHub-Event"),
        correlation_id=correlation_id,
    )

    if secret:
        is_valid, error_msg = validate_webhook_request(
            request.get_data(cache=False),
            request.headers.get(SIGNATURE_HEADER, ""),
            secret,
        )
        if not is_valid:
            log_processing_result(correlation_id, "denied", error_msg)
            return "", 401

    if spawner.registry.count() == 0:
        log_processing_result(correlation_id, "skipped", "No commands configured")
        return "", 200

    with CorrelationContext(correlation_id):
        started = spawner.fire_all()

    log_processing_result(
        correlation_id,
        "dispatched",
        f"Launched {len(started)} of {spawner.registry.count()} command(s)",
        {"pids": [child.pid for child in started]},
    )
    return "", 200


def create_app(spawner: CommandSpawner, secret: Optional[str] = None) -> Flask:
    """Build the Flask app that serves webhooks for `spawner`."""
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH
    app.config["WEBHOOK_SECRET"] = secret or None
    app.extensions["stooge.spawner"] = spawner
    app.register_blueprint(bp)
    return app


def _split_head(buffer: bytes) -> tuple[Optional[bytes], bytes]:
    """Split a raw request into (head, body); head is None until it is complete."""
    for separator in (b"\r\n\r\n", b"\n\n"):
        end = buffer.find(separator)
        if end >= 0:
            return buffer[:end], buffer[end + len(separator):]
    return None, b""


def _header(head: bytes, name: bytes) -> Optional[bytes]:
    for line in head.splitlines()[1:]:
        key, sep, value = line.partition(b":")
        if sep and key.strip().lower() == name:
            return value.strip()
    return None


def request_complete(buffer: bytes) -> bool:
    """
    True once `buffer` holds a whole request, or enough that waiting longer
    is pointless (oversized head or body). werkzeug answers those with an
    error status.
    """
    if len(buffer) > MAX_HEADER_BYTES + MAX_CONTENT_LENGTH:
        return True
    head, body = _split_head(buffer)
    if head is None:
        return len(buffer) > MAX_HEADER_BYTES
    if b"chunked" in (_header(head, b"transfer-encoding") or b"").lower():
        return body.endswith(b"0\r\n\r\n")
    length = _header(head, b"content-length")
    if length is None:
        return True
    try:
        expected = int(length)
    except ValueError:
        return True
    if expected < 0 or expected > MAX_CONTENT_LENGTH:
        return True
    return len(body) >= expected


def _expects_continue(buffer: bytes) -> bool:
    head, _ = _split_head(buffer)
    if head is None:
        return False
    return (_header(head, b"expect") or b"").lower() == b"100-continue"


class BufferedRequestHandler(WSGIRequestHandler):
    """
    Serves one request that the acceptor has already read in full.

    The request is parsed from memory, so nothing here waits on the client.
    Responses are HTTP/1.1 and werkzeug closes the connection after each one.
    """

    protocol_version = "HTTP/1.1"

    def __init__(self, request, client_address, server, raw_request: bytes):
        self.raw_request = raw_request
        super().__init__(request, client_address, server)

    def setup(self) -> None:
        super().setup()
        self.rfile.close()
        self.rfile = io.BytesIO(self.raw_request)


@dataclass
class PendingClient:
    """A connection whose request has not fully arrived yet."""

    sock: socket.socket = field(repr=False)
    address: tuple
    deadline: float
    buffer: bytearray = field(default_factory=bytearray, repr=False)
    sent_continue: bool = False


class WebhookAcceptor:
    """
    Single-threaded HTTP server driven by an outside readiness loop.

    The owner asks for `descriptor_set()`, waits on it (for at most
    `wait_timeout()` seconds), and passes whatever became ready to
    `advance()`. Connections are read without blocking and a request is
    only handed to the app once all of it has arrived, so a slow or idle
    client never holds up the loop.
    """

    def __init__(self, app: Flask, host: str, port: int):
        self.app = app
        self.host = host
        self.port = port
        self._server: Optional[BaseWSGIServer] = None
        self._clients: dict[int, PendingClient] = {}
        self.stop_calls = 0

    @property
    def started(self) -> bool:
        return self._server is not None

    @property
    def pending_count(self) -> int:
        """Connections still waiting for their request to arrive."""
        return len(self._clients)

    @property
    def server_address(self) -> tuple[str, int]:
        if self._server is None:
            raise RuntimeError("Acceptor is not started")
        return self._server.server_address[:2]

    def start(self) -> None:
        """Bind the listening socket. Raises OSError if the port is unavailable."""
        if self._server is not None:
            return
        # werkzeug exits the process when it fails to bind, so bind here and
        # hand it the descriptor instead.
        family = select_address_family(self.host, self.port)
        with socket.create_server((self.host, self.port), family=family, backlog=LISTEN_BACKLOG) as sock:
            server = make_server(
                self.host,
                self.port,
                self.app,
                threaded=False,
                processes=1,
                request_handler=BufferedRequestHandler,
                fd=sock.fileno(),
            )
        server.socket.setblocking(False)
        self._server = server
        self.port = server.server_address[1]

    def descriptor_set(self) -> tuple[list[int], list[int], list[int]]:
        """Descriptors to watch as (readers, writers, errors)."""
        if self._server is None:
            return [], [], []
        return [self._server.fileno(), *self._clients], [], []

    def wait_timeout(self) -> Optional[float]:
        """Seconds until the oldest pending connection expires, or None."""
        if not self._clients:
            return None
        earliest = min(client.deadline for client in self._clients.values())
        return max(0.0, earliest - time.monotonic())

    def advance(self, readable, writable=(), errored=()) -> int:
        """
        Accept new connections, read from ready ones, and serve every
        request that is now complete. Expired connections are closed.

        Returns:
            Number of requests handled
        """
        if self._server is None:
            return 0
        ready = set(readable)
        handled = 0
        if self._server.fileno() in ready:
            self._accept()
        for fd in [fd for fd in self._clients if fd in ready]:
            handled += self._receive(fd)
        self._expire()
        return handled

    def _accept(self) -> None:
        for _ in range(LISTEN_BACKLOG):
            try:
                sock, address = self._server.socket.accept()
            except (BlockingIOError, InterruptedError):
                return
            except OSError as e:
                logger.warning(f"accept() failed: {e}")
                return
            sock.setblocking(False)
            self._clients[sock.fileno()] = PendingClient(
                sock=sock,
                address=address,
                deadline=time.monotonic() + CLIENT_TIMEOUT,
            )
            if len(self._clients) > MAX_PENDING_CLIENTS:
                oldest = next(iter(self._clients))
                logger.warning(
                    f"Too many pending connections, dropping {self._clients[oldest].address[0]}"
                )
                self._drop(oldest)

    def _receive(self, fd: int) -> int:
        client = self._clients[fd]
        try:
            chunk = client.sock.recv(RECV_SIZE)
        except (BlockingIOError, InterruptedError):
            return 0
        except OSError as e:
            logger.debug(f"Connection from {client.address[0]} failed: {e}")
            self._drop(fd)
            return 0
        if not chunk:
            logger.debug(f"Connection from {client.address[0]} closed before a full request")
            self._drop(fd)
            return 0

        client.buffer += chunk
        if not request_complete(client.buffer):
            if not client.sent_continue and _expects_continue(client.buffer):
                client.sent_continue = True
                try:
                    client.sock.send(_CONTINUE)
                except OSError as e:
                    logger.debug(f"Connection from {client.address[0]} failed: {e}")
                    self._drop(fd)
            return 0

        del self._clients[fd]
        self._serve(client)
        return 1

    def _serve(self, client: PendingClient) -> None:
        head, body = _split_head(bytes(client.buffer))
        if head is None:
            raw = bytes(client.buffer)
        else:
            # Any 100 Continue has been sent already, or the body came without one.
            raw = _EXPECT_LINE.sub(b"", head + b"\r\n") + b"\r\n" + body
        sock = client.sock
        try:
            sock.settimeout(RESPONSE_TIMEOUT)
            BufferedRequestHandler(sock, client.address, self._server, raw)
        except OSError as e:
            logger.warning(f"Failed to answer {client.address[0]}: {e}")
        finally:
            self._server.shutdown_request(sock)

    def _expire(self) -> None:
        now = time.monotonic()
        for fd in [fd for fd, client in self._clients.items() if client.deadline <= now]:
            logger.debug(f"Closing idle connection from {self._clients[fd].address[0]}")
            self._drop(fd)

    def _drop(self, fd: int) -> None:
        client = self._clients.pop(fd)
        client.sock.close()

    def stop(self) -> None:
        """Close pending connections and the listening socket. Calling it again does nothing."""
        if self._server is None:
            return
        self.stop_calls += 1
        for fd in list(self._clients):
            self._drop(fd)
        server, self._server = self._server, None
        server.server_close()
