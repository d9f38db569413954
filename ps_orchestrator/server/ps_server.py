"""Parameter server shard."""

import threading
import time
from typing import Any, Callable, Dict, Optional

from ps_orchestrator.communication.protocol import (
    MessageType,
    PSMessage,
    ServerInfo,
)
from ps_orchestrator.communication.rpc_handler import RPCServer
from ps_orchestrator.communication.serialization import Serializer
from ps_orchestrator.server.matrix_store import MatrixStore
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.logging import get_logger


class PSServer:
    """
    One PS shard: holds the matrix partitions placed on it and serves
    create/init/pull/push requests from the control client and from tasks.
    """

    def __init__(
        self,
        server_id: int,
        config: PSConfig,
        host: Optional[str] = None,
        port: Optional[int] = None
    ):
        """
        Initialize PS shard.

        Args:
            server_id: Shard id (0 to num_servers-1)
            config: Job configuration
            host: Host to bind to (default: config.server_host)
            port: Port to listen on (default: server_port_base + server_id,
                or an ephemeral port when server_port_base is 0)
        """
        self.server_id = server_id
        self.config = config

        self.host = host or config.server_host
        if port is None:
            port = config.server_port_base + server_id if config.server_port_base else 0
        self.port = port

        self.logger = get_logger(f"ps_server_{server_id}")
        self.serializer = Serializer(
            compression=config.compression,
            compression_algorithm=config.compression_algorithm
        )

        self._store = MatrixStore()
        self._rpc_server: Optional[RPCServer] = None

        self._running = False
        self._shutdown_event = threading.Event()
        self._stats = {
            "requests_handled": 0,
            "start_time": None,
            "errors": 0,
        }
        self._stats_lock = threading.Lock()

    def start(self) -> ServerInfo:
        """Start serving; returns this shard's endpoint."""
        if self._running:
            return self.get_server_info()

        self._rpc_server = RPCServer(
            host=self.host,
            port=self.port,
            num_workers=self.config.num_worker_threads,
            max_message_size=self.config.max_message_size,
            serializer=self.serializer,
            name=f"ps_server_{self.server_id}.rpc",
        )
        self._register_handlers()
        self.port = self._rpc_server.start()

        self._running = True
        self._stats["start_time"] = time.time()
        self.logger.info(f"PS shard {self.server_id} started on {self.host}:{self.port}")
        return self.get_server_info()

    def _register_handlers(self):
        handlers: Dict[MessageType, Callable[[Any], Any]] = {
            MessageType.PING: self._handle_ping,
            MessageType.GET_STATS: self._handle_get_stats,
            MessageType.CREATE_MATRICES: self._handle_create_matrices,
            MessageType.DROP_MATRICES: self._handle_drop_matrices,
            MessageType.INIT_MATRICES: self._handle_init_matrices,
            MessageType.PULL_PARTITIONS: self._handle_pull_partitions,
            MessageType.PUSH_PARTITIONS: self._handle_push_partitions,
        }
        for msg_type, handler in handlers.items():
            self._rpc_server.register_handler(msg_type, self._wrap(msg_type, handler))
        self._rpc_server.register_handler(MessageType.SHUTDOWN, self._handle_shutdown)

    def _wrap(self, msg_type: MessageType, handler: Callable[[Any], Any]):
        """Turn a payload -> result function into an RPC handler."""

        def handle(message: PSMessage) -> PSMessage:
            with self._stats_lock:
                self._stats["requests_handled"] += 1
            try:
                result = handler(message.payload or {})
            except Exception as e:
                with self._stats_lock:
                    self._stats["errors"] += 1
                self.logger.error(f"Error in {msg_type.name}: {e}")
                return message.error_response(str(e))

            if result is None:
                return message.create_response(MessageType.RESPONSE_OK)
            return message.create_response(MessageType.RESPONSE_DATA, result)

        return handle

    def shutdown(self, grace_period_seconds: float = 5.0, wait: bool = True):
        """
        Stop serving.

        Args:
            grace_period_seconds: Time allowed for in-flight requests
            wait: Wait for in-flight requests (False when killed)
        """
        if not self._running:
            return

        self.logger.info(f"Shutting down PS shard {self.server_id}")
        self._running = False
        self._shutdown_event.set()

        if self._rpc_server:
            self._rpc_server.stop(timeout=grace_period_seconds, wait=wait)
        self._store.clear()

    def get_server_info(self) -> ServerInfo:
        return ServerInfo(
            server_id=self.server_id,
            host=self.host,
            port=self.port,
            status="running" if self._running else "stopped",
            metadata={"num_matrices": len(self._store)},
        )

    # Handlers

    def _handle_ping(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "status": "ready" if self._running else "stopping",
            "timestamp": time.time(),
        }

    def _handle_get_stats(self, request: Dict[str, Any]) -> Dict[str, Any]:
        with self._stats_lock:
            server_stats = dict(self._stats)
        start_time = server_stats["start_time"]
        return {
            "server_id": self.server_id,
            "store_stats": self._store.get_stats(),
            "server_stats": server_stats,
            "uptime": time.time() - start_time if start_time else 0,
        }

    def _handle_create_matrices(self, request: Dict[str, Any]) -> None:
        for meta in request.get("matrices", []):
            self._store.create(meta)
            self.logger.debug(f"Created matrix {meta['name']} (id={meta['matrix_id']})")

    def _handle_drop_matrices(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return {"dropped": self._store.drop(request.get("matrix_ids", []))}

    def _handle_init_matrices(self, request: Dict[str, Any]) -> None:
        base_seed = request.get("seed", 0)
        for matrix_id in request.get("matrix_ids", []):
            self._store.init(matrix_id, base_seed)

    def _handle_pull_partitions(self, request: Dict[str, Any]) -> Dict[str, Any]:
        matrix_id = request["matrix_id"]
        return {
            "partitions": self._store.get_partitions(matrix_id, request.get("indices")),
            "version": self._store.get_version(matrix_id),
        }

    def _handle_push_partitions(self, request: Dict[str, Any]) -> None:
        self._store.set_partitions(
            request["matrix_id"],
            request["partitions"],
            add=request.get("mode", "set") == "add",
        )

    def _handle_shutdown(self, message: PSMessage) -> PSMessage:
        # Stopping joins the handler pool, so it cannot run on a handler thread
        threading.Thread(
            target=lambda: self.shutdown(grace_period_seconds=5),
            daemon=True
        ).start()
        return message.create_response(MessageType.RESPONSE_OK)

    @property
    def is_running(self) -> bool:
        return self._running

    def is_alive(self) -> bool:
        """Whether the serving thread is still running (it may lag a kill)."""
        return self._rpc_server is not None and self._rpc_server.is_serving()

    def join(self, timeout: float):
        if self._rpc_server is not None:
            self._rpc_server.join(timeout)

    @property
    def store(self) -> MatrixStore:
        return self._store
