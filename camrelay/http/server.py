"""
HTTP/WebSocket front end for camrelay.

One listening socket serves both the control endpoints and the WebSocket
subscribers:

- GET  /stream-status   JSON status snapshot
- POST /restart-stream  restart the transcoder, reply once done
- any path with a WebSocket upgrade  subscribe to the frame stream
"""

import json
import logging
import select
import socket
import threading
from typing import Optional, Tuple

from camrelay.http.broadcaster import Broadcaster
from camrelay.http.websocket import (
    OPCODE_CLOSE,
    OPCODE_PING,
    OPCODE_PONG,
    WebSocketError,
    create_close_frame,
    create_upgrade_response,
    decode_websocket_frame,
    encode_websocket_frame,
    parse_upgrade_request,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CLIENTS = 100

# Upper bound on request head size; control requests are tiny
MAX_REQUEST_BYTES = 16 * 1024

# How long a connection may take to send its request head
REQUEST_TIMEOUT_SEC = 5.0

# Poll interval of a WebSocket read loop, so stop() is noticed
WS_POLL_INTERVAL_SEC = 1.0

_REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    500: "Internal Server Error",
    503: "Service Unavailable",
}

# path -> allowed method
_ROUTES = {
    "/stream-status": "GET",
    "/restart-stream": "POST",
}


def build_json_response(status: int, body: dict) -> bytes:
    payload = json.dumps(body)
    response = (
        f"HTTP/1.1 {status} {_REASONS.get(status, 'Unknown')}\r\n"
        "Content-Type: application/json; charset=utf-8\r\n"
        f"Content-Length: {len(payload.encode('utf-8'))}\r\n"
        "Connection: close\r\n"
        "\r\n"
        f"{payload}"
    )
    return response.encode("utf-8")


class HTTPServer:
    """
    Threaded raw-socket server: one accept thread, one thread per connection.

    Args:
        host: Host address to bind to
        port: Port to listen on (0 picks a free port, see .port after start())
        supervisor: StreamSupervisor answering status()/restart()
        broadcaster: Broadcaster that owns subscriber sockets
        restart_delay_sec: Delay used by POST /restart-stream
        max_clients: Subscriber limit; further upgrades get 503
    """

    def __init__(
        self,
        host: str,
        port: int,
        supervisor,
        broadcaster: Broadcaster,
        restart_delay_sec: float = 1.0,
        max_clients: int = DEFAULT_MAX_CLIENTS,
    ):
        self.host = host
        self.port = port
        self.supervisor = supervisor
        self.broadcaster = broadcaster
        self.restart_delay_sec = restart_delay_sec
        self.max_clients = max_clients

        self.running = False
        self._server_sock: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Bind, listen and accept connections in a background thread."""
        self._server_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server_sock.bind((self.host, self.port))
        self._server_sock.listen(50)
        # Resolve port 0 to the one the kernel picked
        self.port = self._server_sock.getsockname()[1]

        self.running = True
        self._accept_thread = threading.Thread(target=self._run, daemon=True, name="HTTPAccept")
        self._accept_thread.start()
        logger.info(f"HTTP server listening on {self.host}:{self.port}")

    def stop(self) -> None:
        """Close the listening socket. Subscriber sockets belong to the broadcaster."""
        self.running = False
        if self._server_sock is not None:
            try:
                self._server_sock.close()
            except OSError:
                pass
            self._server_sock = None
        if self._accept_thread is not None and self._accept_thread is not threading.current_thread():
            self._accept_thread.join(timeout=2.0)
        logger.info("HTTP server stopped")

    def _run(self) -> None:
        """Main server loop - accepts connections."""
        server_sock = self._server_sock
        while self.running and server_sock is not None:
            try:
                client, addr = server_sock.accept()
            except OSError:
                # Socket closed during shutdown
                break
            threading.Thread(
                target=self._handle_client, args=(client, addr), daemon=True
            ).start()

    def _read_request_head(self, client: socket.socket) -> Optional[bytes]:
        client.settimeout(REQUEST_TIMEOUT_SEC)
        data = b""
        while b"\r\n\r\n" not in data:
            chunk = client.recv(4096)
            if not chunk:
                return data or None
            data += chunk
            if len(data) > MAX_REQUEST_BYTES:
                break
        return data

    def _handle_client(self, client: socket.socket, addr: Tuple) -> None:
        """Parse one request and dispatch it."""
        handed_off = False
        try:
            request = self._read_request_head(client)
            if not request:
                return

            request_str = request.decode("utf-8", errors="ignore")
            parts = request_str.split("\r\n", 1)[0].split()
            if len(parts) < 2:
                self._send(client, build_json_response(400, {"error": "Malformed request line"}))
                return

            method = parts[0].upper()
            path = parts[1].split("?", 1)[0]

            ws_info = parse_upgrade_request(request_str)
            if ws_info is not None:
                handed_off = True
                self._handle_websocket(client, addr, ws_info["sec-websocket-key"])
                return

            allowed = _ROUTES.get(path)
            if allowed is None:
                self._send(client, build_json_response(404, {"error": f"Not found: {path}"}))
            elif method != allowed:
                self._send(
                    client,
                    build_json_response(405, {"error": f"Method {method} not allowed on {path}"}),
                )
            elif path == "/stream-status":
                self._handle_stream_status(client)
            else:
                self._handle_restart_stream(client)

        except socket.timeout:
            logger.debug(f"Client {addr} timed out before sending a request")
        except Exception as e:
            logger.warning(f"Client error from {addr}: {e}")
            if not handed_off:
                self._send(client, build_json_response(500, {"error": "Internal server error"}))
        finally:
            if not handed_off:
                try:
                    client.close()
                except OSError:
                    pass

    def _handle_stream_status(self, client: socket.socket) -> None:
        status = self.supervisor.status()
        body = {
            "status": status["status"],
            "clients": status["clients"],
            "message": status["message"],
        }
        self._send(client, build_json_response(200, body))

    def _handle_restart_stream(self, client: socket.socket) -> None:
        logger.info("Restart requested over HTTP")
        self.supervisor.restart(self.restart_delay_sec)
        self._send(
            client,
            build_json_response(200, {"success": True, "message": "Stream service restarted"}),
        )

    def _handle_websocket(self, client: socket.socket, addr: Tuple, sec_websocket_key: str) -> None:
        """
        Upgrade, register with the broadcaster and serve control frames
        until the peer goes away.
        """
        if self.broadcaster.count >= self.max_clients:
            logger.warning(
                f"Rejecting subscriber from {addr}: maximum client count ({self.max_clients}) reached"
            )
            self._send(client, build_json_response(503, {"error": "Too many clients"}))
            try:
                client.close()
            except OSError:
                pass
            return

        try:
            client.settimeout(None)
            client.sendall(create_upgrade_response(sec_websocket_key))
        except OSError as e:
            logger.warning(f"Error sending WebSocket upgrade response to {addr}: {e}")
            try:
                client.close()
            except OSError:
                pass
            return

        subscriber = self.broadcaster.subscribe(client, addr)
        buffer = b""
        try:
            while self.running and not subscriber.closed:
                # The socket is non-blocking now; wait for readability instead
                # of using a socket timeout, which would switch it back.
                # Also wait for writability while bytes are still queued
                wlist = [client] if self.broadcaster.has_pending(subscriber) else []
                try:
                    readable, writable, _ = select.select([client], wlist, [], WS_POLL_INTERVAL_SEC)
                except (OSError, ValueError):
                    break
                if writable and not self.broadcaster.flush(subscriber):
                    break
                if not readable:
                    continue
                try:
                    data = client.recv(4096)
                except (BlockingIOError, InterruptedError):
                    continue
                except OSError:
                    break
                if not data:
                    break

                buffer += data
                keep_open, buffer = self._process_client_frames(subscriber, buffer)
                if not keep_open:
                    break
        except WebSocketError as e:
            logger.info(f"Subscriber {subscriber.id} protocol error: {e}")
        finally:
            self.broadcaster.unsubscribe(subscriber)

    def _process_client_frames(self, subscriber, buffer: bytes) -> Tuple[bool, bytes]:
        """
        Handle every complete frame in buffer.

        Returns:
            (keep_open, unconsumed bytes)
        """
        while len(buffer) >= 2:
            opcode, payload, consumed = decode_websocket_frame(buffer)
            if opcode is None:
                break
            buffer = buffer[consumed:]

            if opcode == OPCODE_CLOSE:
                self.broadcaster.send(subscriber, create_close_frame())
                return False, buffer
            if opcode == OPCODE_PING:
                pong = encode_websocket_frame(payload, opcode=OPCODE_PONG)
                if not self.broadcaster.send(subscriber, pong):
                    return False, buffer
            # Text/binary/pong from the browser are ignored
        return True, buffer

    def _send(self, client: socket.socket, data: bytes) -> None:
        try:
            client.sendall(data)
        except OSError as e:
            logger.debug(f"Failed to send response: {e}")
