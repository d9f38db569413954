"""Socket RPC layer used to reach the master and the PS shards."""

import socket
import struct
import threading
import queue
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from concurrent.futures import ThreadPoolExecutor
import selectors

from ps_orchestrator.communication.protocol import PSMessage, MessageType
from ps_orchestrator.communication.serialization import Serializer
from ps_orchestrator.errors import ClusterError, ConnectivityError, ErrorKind
from ps_orchestrator.utils.logging import get_logger


HEADER = struct.Struct("<I")


class ResponseLostError(ConnectionError):
    """The request frame was fully sent but no response came back."""


class RPCServer:
    """
    Selector based RPC server used by the master and every PS shard.

    Frames are a 4 byte little-endian length followed by a serialized
    ``PSMessage``. Complete frames are handed to a thread pool, so one slow
    handler does not block other connections.
    """

    def __init__(
        self,
        host: str,
        port: int,
        num_workers: int = 4,
        max_message_size: int = 256 * 1024 * 1024,
        serializer: Optional[Serializer] = None,
        name: str = "rpc_server"
    ):
        """
        Initialize RPC server.

        Args:
            host: Host to bind to
            port: Port to listen on (0 = pick a free port)
            num_workers: Number of handler threads
            max_message_size: Maximum frame size in bytes
            serializer: Frame serializer
            name: Component name used for logging
        """
        self.host = host
        self.port = port
        self.num_workers = num_workers
        self.max_message_size = max_message_size

        self.logger = get_logger(name)
        self.serializer = serializer or Serializer()

        self._handlers: Dict[MessageType, Callable[[PSMessage], PSMessage]] = {}
        self._socket: Optional[socket.socket] = None
        self._selector: Optional[selectors.DefaultSelector] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._running = False
        self._server_thread: Optional[threading.Thread] = None
        self._connections: Dict[socket.socket, Dict] = {}
        self._lock = threading.RLock()

    def register_handler(self, msg_type: MessageType, handler: Callable[[PSMessage], PSMessage]):
        """
        Register a handler for a message type.

        Args:
            msg_type: Message type to handle
            handler: Function(PSMessage) -> PSMessage
        """
        self._handlers[msg_type] = handler

    def start(self) -> int:
        """Start serving and return the bound port."""
        if self._running:
            return self.port

        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind((self.host, self.port))
        self._socket.listen(128)
        self._socket.setblocking(False)
        self.port = self._socket.getsockname()[1]

        self._selector = selectors.DefaultSelector()
        self._selector.register(self._socket, selectors.EVENT_READ, data=None)

        self._executor = ThreadPoolExecutor(max_workers=self.num_workers)
        self._running = True

        self._server_thread = threading.Thread(
            target=self._serve_loop,
            name=f"rpc-{self.port}",
            daemon=True
        )
        self._server_thread.start()

        self.logger.info(f"RPC server listening on {self.host}:{self.port}")
        return self.port

    def stop(self, timeout: float = 5.0, wait: bool = True):
        """
        Stop the server.

        Args:
            timeout: Time to wait for the serve loop to exit
            wait: Wait for in-flight handlers (False when killing)
        """
        if not self._running:
            return
        self._running = False

        if self._server_thread and wait and threading.current_thread() is not self._server_thread:
            self._server_thread.join(timeout=timeout)

        if self._executor:
            self._executor.shutdown(wait=wait, cancel_futures=True)

        with self._lock:
            for conn in list(self._connections.keys()):
                self._close_connection(conn)

            if self._socket:
                try:
                    self._selector.unregister(self._socket)
                except (KeyError, ValueError):
                    pass
                self._socket.close()

        self.logger.info(f"RPC server on port {self.port} stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def is_serving(self) -> bool:
        return self._server_thread is not None and self._server_thread.is_alive()

    def join(self, timeout: float):
        if self._server_thread is not None and threading.current_thread() is not self._server_thread:
            self._server_thread.join(timeout=timeout)

    def _serve_loop(self):
        while self._running:
            try:
                events = self._selector.select(timeout=0.1)
                for key, mask in events:
                    if key.data is None:
                        self._accept_connection(key.fileobj)
                    else:
                        self._handle_connection(key, mask)
            except (OSError, ValueError) as e:
                if self._running:
                    self.logger.error(f"Server loop error: {e}")

        if self._selector:
            self._selector.close()

    def _accept_connection(self, sock: socket.socket):
        try:
            conn, addr = sock.accept()
        except BlockingIOError:
            return
        conn.setblocking(False)

        with self._lock:
            self._connections[conn] = {"addr": addr, "buffer": b""}
            self._selector.register(conn, selectors.EVENT_READ, data={"addr": addr})

        self.logger.debug(f"Accepted connection from {addr}")

    def _handle_connection(self, key: selectors.SelectorKey, mask: int):
        conn = key.fileobj
        if not mask & selectors.EVENT_READ:
            return

        try:
            data = conn.recv(65536)
        except BlockingIOError:
            return
        except OSError:
            self._close_connection(conn)
            return

        if not data:
            self._close_connection(conn)
            return

        with self._lock:
            conn_data = self._connections.get(conn)
            if conn_data is None:
                return
            conn_data["buffer"] += data
            self._process_buffer(conn, conn_data)

    def _process_buffer(self, conn: socket.socket, conn_data: Dict):
        """Extract complete frames and submit them for handling."""
        buffer = conn_data["buffer"]

        while len(buffer) >= HEADER.size:
            (msg_size,) = HEADER.unpack(buffer[:HEADER.size])

            if msg_size > self.max_message_size:
                self.logger.error(f"Message too large: {msg_size}")
                self._close_connection(conn)
                return

            if len(buffer) < HEADER.size + msg_size:
                break

            frame = buffer[HEADER.size:HEADER.size + msg_size]
            buffer = buffer[HEADER.size + msg_size:]
            try:
                self._executor.submit(self._handle_message, conn, frame)
            except RuntimeError:
                # executor already shut down
                return

        conn_data["buffer"] = buffer

    def _handle_message(self, conn: socket.socket, frame: bytes):
        request_id = ""
        try:
            message = PSMessage.from_dict(self.serializer.deserialize(frame))
            request_id = message.request_id

            handler = self._handlers.get(message.msg_type)
            if handler is None:
                response = message.error_response(f"Unknown message type: {message.msg_type}")
            else:
                response = handler(message)

        except Exception as e:
            self.logger.error(f"Message handling error: {e}")
            response = PSMessage(
                msg_type=MessageType.RESPONSE_ERROR,
                client_id="server",
                request_id=request_id,
                payload={"error": str(e)},
            )

        self._send_response(conn, response)

    def _send_response(self, conn: socket.socket, response: PSMessage):
        try:
            body = self.serializer.serialize(response.to_dict())
            with self._lock:
                if conn not in self._connections:
                    return
                conn.setblocking(True)
                try:
                    conn.sendall(HEADER.pack(len(body)) + body)
                finally:
                    conn.setblocking(False)
        except OSError as e:
            self.logger.warning(f"Send error: {e}")
            self._close_connection(conn)

    def _close_connection(self, conn: socket.socket):
        with self._lock:
            if conn not in self._connections:
                return
            del self._connections[conn]
            try:
                self._selector.unregister(conn)
            except (KeyError, ValueError):
                pass
            conn.close()


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient connectivity failures."""

    attempts: int = 5
    initial_delay: float = 0.1
    max_delay: float = 2.0
    multiplier: float = 2.0

    def delays(self):
        """Yield the sleep before each retry (attempts - 1 values)."""
        delay = self.initial_delay
        for _ in range(self.attempts - 1):
            yield delay
            delay = min(delay * self.multiplier, self.max_delay)

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            attempts=config.connect_retries,
            initial_delay=config.backoff_initial_seconds,
            max_delay=config.backoff_max_seconds,
        )


class RPCClient:
    """
    RPC client for the master and the PS shards.

    Keeps a small pool of open connections per endpoint. ``call`` raises the
    raw socket error; ``request`` adds retries and converts failures into
    ``ClusterError``.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_message_size: int = 256 * 1024 * 1024,
        pool_size: int = 4,
        serializer: Optional[Serializer] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client_id: str = "client"
    ):
        """
        Initialize RPC client.

        Args:
            timeout: Socket timeout per call in seconds
            max_message_size: Maximum frame size
            pool_size: Connections kept open per endpoint
            serializer: Frame serializer
            retry_policy: Backoff used by ``request``
            client_id: Identifier stamped on outgoing messages
        """
        self.timeout = timeout
        self.max_message_size = max_message_size
        self.pool_size = pool_size
        self.client_id = client_id

        self.logger = get_logger("rpc_client")
        self.serializer = serializer or Serializer()
        self.retry_policy = retry_policy or RetryPolicy()

        self._pools: Dict[str, queue.Queue] = {}
        self._lock = threading.Lock()
        self._closed = False

    def _get_connection(self, host: str, port: int) -> socket.socket:
        key = f"{host}:{port}"

        with self._lock:
            pool = self._pools.setdefault(key, queue.Queue(maxsize=self.pool_size))

        while True:
            try:
                conn = pool.get_nowait()
            except queue.Empty:
                break

            # Drop connections the peer has closed
            try:
                conn.setblocking(False)
                alive = conn.recv(1, socket.MSG_PEEK) != b""
            except BlockingIOError:
                alive = True
            except OSError:
                alive = False

            if alive:
                conn.settimeout(self.timeout)
                return conn
            conn.close()

        return socket.create_connection((host, port), timeout=self.timeout)

    def _return_connection(self, host: str, port: int, conn: socket.socket):
        with self._lock:
            pool = self._pools.get(f"{host}:{port}")
        if pool is not None and not self._closed:
            try:
                pool.put_nowait(conn)
                return
            except queue.Full:
                pass
        conn.close()

    def call(self, host: str, port: int, message: PSMessage) -> PSMessage:
        """
        Make one synchronous call.

        Raises:
            ResponseLostError: the request was sent, so the peer may have
                applied it, but no response arrived
            OSError: on any other socket level failure
        """
        if self._closed:
            raise ConnectionError("RPC client is closed")

        conn = self._get_connection(host, port)
        sent = False
        try:
            body = self.serializer.serialize(message.to_dict())
            conn.sendall(HEADER.pack(len(body)) + body)
            sent = True
            response = PSMessage.from_dict(self.serializer.deserialize(self._receive_frame(conn)))
        except OSError as e:
            conn.close()
            if sent:
                raise ResponseLostError(f"No response from {host}:{port}: {e}") from e
            raise
        except BaseException:
            conn.close()
            raise

        self._return_connection(host, port, conn)
        return response

    def request(
        self,
        host: str,
        port: int,
        msg_type: MessageType,
        payload=None,
        retry_policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
        idempotent: bool = True
    ):
        """
        Send a request and return the response payload.

        Transient socket errors are retried with bounded exponential
        backoff. Error responses from the peer are not retried. A request
        that is not idempotent is only retried when it never reached the
        peer.

        Args:
            host: Peer host
            port: Peer port
            msg_type: Request type
            payload: Request payload
            retry_policy: Overrides the client's policy
            cancel_event: Aborts the backoff sleep when set
            idempotent: Whether the request may be applied more than once

        Raises:
            ConnectivityError: retries exhausted
            ClusterError: peer answered with an error (kind CONFIGURATION),
                or cancel_event was set (kind KILLED)
        """
        policy = retry_policy or self.retry_policy
        delays = policy.delays()
        attempt = 0

        while True:
            attempt += 1
            message = PSMessage(msg_type=msg_type, client_id=self.client_id, payload=payload)
            try:
                response = self.call(host, port, message)
                break
            except OSError as e:
                if not idempotent and isinstance(e, ResponseLostError):
                    raise ConnectivityError(
                        f"{msg_type.name} to {host}:{port} may have been applied, not retrying",
                        cause=e,
                    )
                delay = next(delays, None)
                if delay is None:
                    raise ConnectivityError(
                        f"{msg_type.name} to {host}:{port} failed after {attempt} attempts",
                        cause=e,
                    )
                self.logger.warning(
                    f"{msg_type.name} to {host}:{port} failed (attempt {attempt}): {e}; "
                    f"retrying in {delay:.2f}s"
                )
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise ClusterError(f"{msg_type.name} cancelled", kind=ErrorKind.KILLED)
                else:
                    time.sleep(delay)

        if response.is_error:
            raise ClusterError(
                f"{msg_type.name} rejected by {host}:{port}: {response.error}",
                kind=ErrorKind.CONFIGURATION,
            )
        return response.payload

    def _receive_frame(self, conn: socket.socket) -> bytes:
        (msg_size,) = HEADER.unpack(self._recv_exact(conn, HEADER.size))
        if msg_size > self.max_message_size:
            raise ConnectionError(f"Message too large: {msg_size}")
        return self._recv_exact(conn, msg_size)

    def _recv_exact(self, conn: socket.socket, size: int) -> bytes:
        chunks = []
        remaining = size
        while remaining:
            chunk = conn.recv(min(remaining, 65536))
            if not chunk:
                raise ConnectionError("Connection closed by peer")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def close(self):
        """Close all pooled connections."""
        self._closed = True

        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()

        for pool in pools:
            while True:
                try:
                    pool.get_nowait().close()
                except queue.Empty:
                    break

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


