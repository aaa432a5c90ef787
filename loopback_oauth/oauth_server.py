"""
Single-use loopback listener for the desktop OAuth redirect.

The identity provider redirects the browser to a fixed port on 127.0.0.1.
Browsers never send the URL fragment to a server, so the first request is
answered with a bridge page whose script re-submits ``window.location.href``
to ``/cb`` in a ``Full-Url`` header. The second request carries the complete
URL, which is published as the ``oauth-callback`` event.

The worker accepts at most ``MAX_ATTEMPTS`` connections and then closes the
listening socket. It cannot be cancelled; it ends with the flow or with the
process.
"""

import html
import json
import re
import logging
import socketserver
import sys
import threading
from typing import NamedTuple, Optional

from .constants import (
    CALLBACK_PATH,
    DEFAULT_APP_NAME,
    FULL_URL_HEADER,
    LOOPBACK_HOST,
    MAX_ATTEMPTS,
    MAX_REQUEST_BYTES,
    OAUTH_CALLBACK_EVENT,
    OAUTH_CALLBACK_FAILED_EVENT,
    OAUTH_PORT,
)
from .events import EventBus
from .utils import OAuthFlowException

logger = logging.getLogger(__name__)

# Listener states.
WAITING_FOR_REDIRECT = 'waiting_for_redirect'
WAITING_FOR_CALLBACK = 'waiting_for_callback'
DELIVERED = 'delivered'
TERMINATED = 'terminated'

CALLBACK_METHODS = ('GET', 'POST')

# Blank line closing the header block.
HEADER_END = re.compile(r"\r?\n\r?\n")
HEADER_END_BYTES = re.compile(rb"\r?\n\r?\n")

SUCCESS_RESPONSE = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Length: 0\r\n"
    b"Access-Control-Allow-Origin: *\r\n"
    b"\r\n"
)


class ListenerConfig:
    """Loopback listener settings, fixed for the lifetime of the application."""

    def __init__(self, port: int = OAUTH_PORT, host: str = LOOPBACK_HOST,
                 app_name: str = DEFAULT_APP_NAME):
        """
        Args:
            port: Port registered with the identity provider as part of the redirect URI
            host: Loopback address to bind
            app_name: Name shown on the bridge page
        """
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise OAuthFlowException(f"Invalid OAuth callback port: {port!r}", port=port)
        self.port = port
        self.host = host
        self.app_name = app_name

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}/"

    @property
    def callback_url(self) -> str:
        return f"http://{self.host}:{self.port}{CALLBACK_PATH}"


class ParsedRequest(NamedTuple):
    method: str
    path: str
    full_url: Optional[str]


def extract_full_url_header(request: str) -> Optional[str]:
    """
    Find the Full-Url header in a raw request.

    The header name is matched case-insensitively and only within the header
    block; the request line and anything after the first blank line are ignored.
    A header block without its closing blank line yields nothing.

    Returns:
        The trimmed header value, or None if it is absent or empty
    """
    end = HEADER_END.search(request)
    if end is None:
        return None

    prefix = FULL_URL_HEADER.lower() + ':'
    for line in request[:end.start()].splitlines()[1:]:
        if line.lower().startswith(prefix):
            value = line[len(prefix):].strip()
            return value or None
    return None


def parse_request(raw: bytes) -> Optional[ParsedRequest]:
    """
    Extract method, path and the Full-Url header from raw request bytes.

    Args:
        raw: Request bytes, at most MAX_REQUEST_BYTES

    Returns:
        ParsedRequest, or None if the request line is unusable
    """
    text = raw.decode('utf-8', errors='replace')
    lines = text.splitlines()
    if not lines:
        return None

    parts = lines[0].split()
    if len(parts) < 2:
        return None

    method, target = parts[0], parts[1]
    path = target.split('?', 1)[0]
    return ParsedRequest(method, path, extract_full_url_header(text))


def render_bridge_page(callback_url: str, app_name: str = DEFAULT_APP_NAME) -> str:
    """Build the page that forwards the full browser URL, fragment included, to the listener."""
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Authentication Successful</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            align-items: center;
            justify-content: center;
            height: 100vh;
            margin: 0;
            background: #f5f5f5;
        }}
        .container {{
            text-align: center;
            padding: 2rem;
        }}
        h1 {{ color: #333; margin-bottom: 0.5rem; }}
        p {{ color: #666; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Authentication Successful</h1>
        <p>You can close this tab and return to {html.escape(app_name)}.</p>
    </div>
    <script>
        fetch({json.dumps(callback_url)}, {{
            method: "POST",
            headers: {{ "{FULL_URL_HEADER}": window.location.href }}
        }});
    </script>
</body>
</html>
"""


def bridge_response(callback_url: str, app_name: str = DEFAULT_APP_NAME) -> bytes:
    body = render_bridge_page(callback_url, app_name).encode('utf-8')
    head = (
        "HTTP/1.1 200 OK\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode('ascii') + body


class CallbackRequestHandler(socketserver.BaseRequestHandler):
    """Reads one bounded request and hands it to the owning listener.

    Reads continue until the header block is complete, the peer stops sending
    or MAX_REQUEST_BYTES is reached.
    """

    def __init__(self, *args, listener=None, **kwargs):
        self.listener = listener
        super().__init__(*args, **kwargs)

    def handle(self):
        try:
            raw = self._read_request()
        except OSError as e:
            logger.debug("Failed to read request: %s", e)
            return

        request = parse_request(raw)
        if request is None:
            logger.debug("Dropping unparsable request (%d bytes)", len(raw))
            return

        if request.method in CALLBACK_METHODS and request.path == CALLBACK_PATH:
            self.listener._on_callback(self.request, request)
        else:
            self.listener._on_redirect(self.request, request)

    def _read_request(self) -> bytes:
        raw = b''
        while len(raw) < MAX_REQUEST_BYTES and not HEADER_END_BYTES.search(raw):
            chunk = self.request.recv(MAX_REQUEST_BYTES - len(raw))
            if not chunk:
                break
            raw += chunk
        return raw


class _LoopbackServer(socketserver.TCPServer):
    # SO_REUSEADDR lets another process take over a bound port on Windows.
    allow_reuse_address = sys.platform != 'win32'

    def handle_error(self, request, client_address):
        logger.debug("Error while handling connection from %s", client_address, exc_info=True)


class CallbackListener:
    """Owns the loopback socket and the background worker of one OAuth flow."""

    def __init__(self, app: EventBus, config: Optional[ListenerConfig] = None):
        """
        Args:
            app: Event bus of the embedding application, receives the result
            config: Listener settings, defaults to the registered port
        """
        self.app = app
        self.config = config or ListenerConfig()
        self.server = None
        self.server_thread = None
        self.state = WAITING_FOR_REDIRECT
        self.attempts = 0
        self.captured_url = None
        self._bridge = bridge_response(self.config.callback_url, self.config.app_name)

    @property
    def port(self) -> int:
        return self.config.port

    def start(self) -> int:
        """
        Bind the loopback port and start the worker.

        Returns:
            The bound port number

        Raises:
            OAuthFlowException: If the port cannot be bound; no worker is started
        """
        if self.server is not None:
            raise OAuthFlowException("OAuth callback listener already started", port=self.port)

        handler = lambda *args, **kwargs: CallbackRequestHandler(
            *args,
            listener=self,
            **kwargs
        )

        try:
            self.server = _LoopbackServer((self.config.host, self.port), handler)
        except OSError as e:
            raise OAuthFlowException(
                f"Failed to bind port {self.port}: {e.strerror or e}",
                port=self.port
            ) from e

        logger.debug("OAuth callback listener bound to %s:%d", self.config.host, self.port)

        self.server_thread = threading.Thread(
            target=self._run_server,
            name=f"oauth-callback-{self.port}"
        )
        self.server_thread.daemon = True
        self.server_thread.start()

        return self.port

    def is_alive(self) -> bool:
        return self.server_thread is not None and self.server_thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the worker to exit.

        Returns:
            True if the worker has exited
        """
        if self.server_thread is not None:
            self.server_thread.join(timeout=timeout)
        return not self.is_alive()

    def _run_server(self):
        server = self.server
        try:
            while self.attempts < MAX_ATTEMPTS and self.state != DELIVERED:
                self.attempts += 1
                server.handle_request()
        finally:
            server.server_close()
            delivered = self.state == DELIVERED
            self.state = TERMINATED

        if not delivered:
            logger.warning("OAuth callback not received after %d connection(s)", self.attempts)
            self.app.emit(
                OAUTH_CALLBACK_FAILED_EVENT,
                f"No OAuth callback received after {self.attempts} connection(s)"
            )

    def _on_redirect(self, conn, request: ParsedRequest):
        logger.debug("Serving bridge page for %s %s", request.method, request.path)
        self._send(conn, self._bridge)

    def _on_callback(self, conn, request: ParsedRequest):
        self.state = WAITING_FOR_CALLBACK
        if not request.full_url:
            logger.debug("Dropping %s %s without %s header", request.method, request.path, FULL_URL_HEADER)
            return

        self.captured_url = request.full_url
        self.state = DELIVERED
        logger.debug("Captured callback URL (%d chars)", len(request.full_url))
        self.app.emit(OAUTH_CALLBACK_EVENT, request.full_url)
        self._send(conn, SUCCESS_RESPONSE)

    def _send(self, conn, data: bytes):
        try:
            conn.sendall(data)
        except OSError as e:
            logger.debug("Failed to write response: %s", e)


def start_oauth_flow(app: EventBus, config: Optional[ListenerConfig] = None) -> int:
    """
    Start the loopback listener for one OAuth redirect flow.

    Returns immediately; the result is published on ``app`` as
    ``oauth-callback`` (or ``oauth-callback-failed`` once the connection
    budget is spent). Callers should not start a second flow while one is
    running.

    Args:
        app: Event bus of the embedding application
        config: Listener settings, defaults to the registered port

    Returns:
        The bound port number

    Raises:
        OAuthFlowException: If the port is unavailable
    """
    return CallbackListener(app, config).start()
