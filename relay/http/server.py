# relay/http/server.py

import json
import logging
import mimetypes
import re
import socket
import threading
import uuid
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import unquote

from relay.core.endpoint import EndpointError, EndpointKey, parse_port, resolve_endpoint
from relay.core.registry import ChannelRegistry
from relay.http.client_sink import DEFAULT_MAX_QUEUE, ClientSink

logger = logging.getLogger(__name__)

# /<host>/<port>/listen.mp3
LISTEN_PATH_RE = re.compile(r"^/([^/]+)/([^/]+)/listen\.mp3$")

STATUS_PATH = "/relay/status"

MAX_REQUEST_BYTES = 8192

DEFAULT_CLIENT_TIMEOUT_SEC = 5.0
DEFAULT_MAX_CLIENTS = 100

_REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    502: "Bad Gateway",
    503: "Service Unavailable",
}


class HTTPServer:
    """
    HTTP gateway for the relay.

    One thread per connection. Routes:
    - GET /<host>/<port>/listen.mp3: stream the endpoint's MP3 relay
    - GET /relay/status: JSON snapshot of known channels
    - any other GET: static file from static_dir

    A listener holds one Subscription for the lifetime of its response and
    unsubscribes exactly once, whichever way the response ends.
    """

    def __init__(
        self,
        host: str,
        port: int,
        registry: ChannelRegistry,
        static_dir: Optional[Path] = None,
        resolver: Callable[[str, int], EndpointKey] = resolve_endpoint,
        client_queue_size: int = DEFAULT_MAX_QUEUE,
        client_timeout_sec: float = DEFAULT_CLIENT_TIMEOUT_SEC,
        max_clients: int = DEFAULT_MAX_CLIENTS,
        trust_proxy: bool = True,
    ):
        """
        Initialize HTTPServer.

        Args:
            host: Host address to bind to
            port: Port to listen on (0 picks an ephemeral port, see .port after start())
            registry: ChannelRegistry listeners subscribe through
            static_dir: Optional directory served for non-stream paths
            resolver: Turns (host, port) into an EndpointKey
            client_queue_size: Chunks buffered per listener before it is dropped
            client_timeout_sec: Socket timeout for listener sends
            max_clients: Maximum concurrent streaming listeners
            trust_proxy: Take the client IP from X-Forwarded-For when present
        """
        self.host = host
        self.port = port
        self.registry = registry
        self.static_dir = Path(static_dir).resolve() if static_dir is not None else None
        self._resolver = resolver
        self._client_queue_size = client_queue_size
        self._client_timeout_sec = client_timeout_sec
        self._max_clients = max_clients
        self._trust_proxy = trust_proxy

        # Streaming listeners: {request_id: ClientSink}
        self._streaming_clients: Dict[str, ClientSink] = {}
        self._clients_lock = threading.Lock()

        self.running = False
        self._server_sock: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None

    @property
    def streaming_client_count(self) -> int:
        with self._clients_lock:
            return len(self._streaming_clients)

    def start(self) -> None:
        """Bind, then accept connections in a background thread."""
        self._bind()
        self._accept_thread = threading.Thread(target=self._run, daemon=True, name="RelayHTTPAccept")
        self._accept_thread.start()
        logger.info(f"HTTP server running on {self.host}:{self.port}")

    def serve_forever(self) -> None:
        """Run the HTTP server in the current thread (blocking)."""
        self._bind()
        self._run()

    def _bind(self) -> None:
        self._server_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server_sock.bind((self.host, self.port))
        self._server_sock.listen(50)
        self.port = self._server_sock.getsockname()[1]
        self.running = True
        logger.info(f"HTTP server listening on {self.host}:{self.port}")

    def _run(self) -> None:
        """Main server loop - accepts connections."""
        server_sock = self._server_sock
        while self.running:
            try:
                client, addr = server_sock.accept()
            except OSError:
                # Socket closed during shutdown
                break
            threading.Thread(target=self._handle_client, args=(client, addr), daemon=True).start()

    def stop(self) -> None:
        """Stop accepting connections and drop every streaming listener."""
        self.running = False
        if self._server_sock is not None:
            # shutdown() wakes a blocked accept(); close() alone does not on Linux
            try:
                self._server_sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                self._server_sock.close()
            except OSError:
                pass
            self._server_sock = None

        with self._clients_lock:
            sinks = list(self._streaming_clients.values())
        for sink in sinks:
            sink.close("shutdown")
        logger.info("HTTP server stopped")

    def _handle_client(self, client: socket.socket, addr: Tuple[str, int]) -> None:
        """Handle a single client connection."""
        request_id = str(uuid.uuid4())
        try:
            client.settimeout(self._client_timeout_sec)
            request = self._read_request(client)
            if not request:
                return

            method, path, headers = self._parse_request(request)
            if method is None:
                self._send_response(client, 400, "Malformed request\r\n")
                return

            client_ip = addr[0]
            if self._trust_proxy and headers.get("x-forwarded-for"):
                client_ip = headers["x-forwarded-for"].split(",")[0].strip()

            if method != "GET":
                self._send_response(client, 405, "Method not allowed\r\n")
                return

            path = path.split("?", 1)[0]
            match = LISTEN_PATH_RE.match(path)
            if match:
                self._handle_listen_endpoint(client, client_ip, request_id, unquote(match.group(1)), unquote(match.group(2)))
            elif path == STATUS_PATH:
                self._handle_status_endpoint(client)
            else:
                self._handle_static(client, path)
        except Exception as e:
            logger.warning(f"Client error: {e}", extra={"request_id": request_id})
        finally:
            try:
                client.close()
            except OSError:
                pass

    def _read_request(self, client: socket.socket) -> bytes:
        data = b""
        while b"\r\n\r\n" not in data and len(data) < MAX_REQUEST_BYTES:
            try:
                chunk = client.recv(4096)
            except socket.timeout:
                break
            if not chunk:
                break
            data += chunk
        return data

    def _parse_request(self, request: bytes):
        """Return (method, path, headers) or (None, None, {}) if malformed."""
        # Format: "GET /path HTTP/1.1\r\nHeader: value\r\n..."
        request_str = request.decode("utf-8", errors="ignore")
        lines = request_str.split("\r\n")
        parts = lines[0].split()
        if len(parts) < 2:
            return None, None, {}

        headers = {}
        for line in lines[1:]:
            if not line:
                break
            if ":" in line:
                name, value = line.split(":", 1)
                headers[name.strip().lower()] = value.strip()
        return parts[0].upper(), parts[1], headers

    def _send_response(self, client: socket.socket, status: int, body, content_type: str = "text/plain") -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        head = (
            f"HTTP/1.1 {status} {_REASONS.get(status, '')}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Connection: close\r\n"
            "\r\n"
        )
        try:
            client.sendall(head.encode("ascii") + body)
        except OSError as e:
            logger.debug(f"Failed to send {status} response: {e}")

    def _handle_listen_endpoint(self, client, client_ip, request_id, host, raw_port) -> None:
        """Stream one endpoint's relay to this client until either side hangs up."""
        try:
            port = parse_port(raw_port)
        except EndpointError:
            self._send_response(client, 400, "Invalid port")
            return

        try:
            key = self._resolver(host, port)
        except EndpointError as e:
            logger.warning(f"[{client_ip} {request_id}] {e}", extra={"request_id": request_id})
            self._send_response(client, 502, "Cannot resolve host")
            return

        extra = {"endpoint": str(key), "request_id": request_id}

        def log(message: str) -> None:
            logger.info(f"[{client_ip} {request_id}] {message} => {host}({key.address}):{key.port}", extra=extra)

        # The slot is reserved in the same critical section as the count check
        sink = ClientSink(client, request_id, max_queue=self._client_queue_size)
        with self._clients_lock:
            too_many = len(self._streaming_clients) >= self._max_clients
            if not too_many:
                self._streaming_clients[request_id] = sink
        if too_many:
            logger.warning(
                f"Rejecting client {request_id}: maximum client count ({self._max_clients}) reached",
                extra=extra,
            )
            self._send_response(client, 503, "Too many listeners")
            return

        headers = (
            "HTTP/1.1 200 OK\r\n"
            "Content-Type: audio/mpeg\r\n"
            "Cache-Control: no-cache, no-store, must-revalidate\r\n"
            "Connection: close\r\n"
            "\r\n"
        )
        streaming = False
        subscription = None
        try:
            channel = self.registry.get_or_create(key)
            try:
                client.sendall(headers.encode("ascii"))
            except OSError as e:
                logger.debug(f"Client {request_id} gone before headers: {e}")
                return

            streaming = True
            log("Response start")
            sink.start()
            subscription = channel.subscribe(
                sink.write,
                on_end=lambda: sink.close("upstream_ended"),
                label=request_id,
            )
            self._wait_for_disconnect(client, sink)
        finally:
            if subscription is not None:
                subscription.unsubscribe()
            sink.close("response_end")
            sink.join(timeout=1.0)
            with self._clients_lock:
                self._streaming_clients.pop(request_id, None)
            if streaming:
                log(f"Response end ({sink.close_reason}, {sink.bytes_sent} bytes)")

    def _wait_for_disconnect(self, client: socket.socket, sink: ClientSink) -> None:
        """Block until the client hangs up or the sink is dropped."""
        while not sink.closed:
            try:
                data = client.recv(1024)
            except socket.timeout:
                # Still connected, just quiet
                continue
            except OSError:
                break
            if not data:
                break

    def _handle_status_endpoint(self, client: socket.socket) -> None:
        body = json.dumps({
            "channels": self.registry.snapshot(),
            "listeners": self.streaming_client_count,
        })
        self._send_response(client, 200, body, content_type="application/json")

    def _handle_static(self, client: socket.socket, path: str) -> None:
        if self.static_dir is None:
            self._send_response(client, 404, "Not found")
            return

        relative = unquote(path).lstrip("/") or "index.html"
        try:
            target = (self.static_dir / relative).resolve()
            if target.is_dir():
                target = target / "index.html"
            found = target.is_relative_to(self.static_dir) and target.is_file()
        except ValueError:
            # Embedded NUL byte
            found = False
        if not found:
            self._send_response(client, 404, "Not found")
            return

        content_type = mimetypes.guess_type(str(target))[0] or "application/octet-stream"
        self._send_response(client, 200, target.read_bytes(), content_type=content_type)
