"""Master process: allocates and supervises the PS shards of a job."""

import threading
import time
from typing import Any, Dict, List, Optional

from ps_orchestrator.communication.protocol import MessageType, PSMessage, ServerInfo
from ps_orchestrator.communication.rpc_handler import RPCServer
from ps_orchestrator.communication.serialization import Serializer
from ps_orchestrator.server.ps_server import PSServer
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.logging import get_logger


class Master:
    """
    Coordinating process of a job.

    The control client talks to it only through RPC: it asks for shards
    (``ALLOCATE_PS``), polls their status and finally asks it to shut them
    down or kill them. In local mode shards run as threads of the master.
    """

    def __init__(self, config: PSConfig, host: Optional[str] = None, port: Optional[int] = None):
        """
        Initialize master.

        Args:
            config: Job configuration
            host: Host to bind to (default: config.server_host)
            port: Port to listen on (default: config.master_port)
        """
        self.config = config
        self.host = host or config.server_host
        self.port = config.master_port if port is None else port

        self.logger = get_logger("master")
        self.serializer = Serializer(
            compression=config.compression,
            compression_algorithm=config.compression_algorithm
        )

        self._servers: List[PSServer] = []
        self._lock = threading.Lock()
        self._rpc_server: Optional[RPCServer] = None
        self._running = False
        self._start_time: Optional[float] = None

    def start(self) -> ServerInfo:
        """Start the master's RPC endpoint."""
        if self._running:
            return self.get_info()

        self._rpc_server = RPCServer(
            host=self.host,
            port=self.port,
            num_workers=self.config.num_worker_threads,
            max_message_size=self.config.max_message_size,
            serializer=self.serializer,
            name="master.rpc",
        )
        handlers = {
            MessageType.PING: self._handle_ping,
            MessageType.ALLOCATE_PS: self._handle_allocate,
            MessageType.GET_PS_STATUS: self._handle_status,
            MessageType.KILL_PS: self._handle_kill,
            MessageType.SHUTDOWN: self._handle_shutdown,
        }
        for msg_type, handler in handlers.items():
            self._rpc_server.register_handler(msg_type, handler)

        self.port = self._rpc_server.start()
        self._running = True
        self._start_time = time.time()
        self.logger.info(f"Master started on {self.host}:{self.port}")
        return self.get_info()

    def get_info(self) -> ServerInfo:
        return ServerInfo(
            server_id=-1,
            host=self.host,
            port=self.port,
            status="running" if self._running else "stopped",
        )

    def allocate(self, num_servers: int) -> List[ServerInfo]:
        """
        Start ``num_servers`` shards, or return the ones already running.

        Raises:
            ValueError: a different number of shards is already allocated
        """
        with self._lock:
            if self._servers:
                if len(self._servers) != num_servers:
                    raise ValueError(
                        f"{len(self._servers)} shards already allocated, requested {num_servers}"
                    )
                return [s.get_server_info() for s in self._servers]

            self.logger.info(f"Allocating {num_servers} PS shards")
            started = []
            try:
                for server_id in range(num_servers):
                    server = PSServer(server_id, self.config)
                    server.start()
                    started.append(server)
            except OSError:
                for server in started:
                    server.shutdown(grace_period_seconds=1)
                raise

            self._servers = started
            return [s.get_server_info() for s in self._servers]

    def shutdown(self, grace_period_seconds: float = 5.0):
        """Gracefully stop every shard and the master endpoint."""
        with self._lock:
            servers, self._servers = self._servers, []
        for server in servers:
            server.shutdown(grace_period_seconds=grace_period_seconds)

        if self._running:
            self._running = False
            self._rpc_server.stop(timeout=grace_period_seconds)
            self.logger.info("Master stopped")

    def kill(self, ack_timeout: float = 0.5) -> List[int]:
        """
        Stop every shard without waiting for in-flight requests.

        Args:
            ack_timeout: Total time spent waiting for serving threads to exit

        Returns:
            Ids of shards whose serving thread was still alive afterwards
        """
        with self._lock:
            servers, self._servers = self._servers, []

        for server in servers:
            server.shutdown(grace_period_seconds=0, wait=False)

        deadline = time.time() + ack_timeout
        stragglers = []
        for server in servers:
            server.join(max(0.0, deadline - time.time()))
            if server.is_alive():
                stragglers.append(server.server_id)

        if self._running:
            self._running = False
            self._rpc_server.stop(timeout=0, wait=False)

        if stragglers:
            self.logger.warning(f"Shards still terminating after kill: {stragglers}")
        return stragglers

    # Handlers

    def _handle_ping(self, message: PSMessage) -> PSMessage:
        return message.create_response(MessageType.RESPONSE_DATA, {"status": "running"})

    def _handle_allocate(self, message: PSMessage) -> PSMessage:
        try:
            num_servers = int((message.payload or {}).get("num_servers", self.config.num_servers))
            servers = self.allocate(num_servers)
        except (ValueError, OSError) as e:
            self.logger.error(f"PS allocation failed: {e}")
            return message.error_response(str(e))
        return message.create_response(
            MessageType.RESPONSE_DATA,
            {"servers": [s.to_dict() for s in servers]},
        )

    def _handle_status(self, message: PSMessage) -> PSMessage:
        with self._lock:
            servers = list(self._servers)
        status: Dict[str, Any] = {
            "servers": [s.get_server_info().to_dict() for s in servers],
            "uptime": time.time() - self._start_time if self._start_time else 0,
        }
        return message.create_response(MessageType.RESPONSE_DATA, status)

    def _handle_kill(self, message: PSMessage) -> PSMessage:
        with self._lock:
            servers, self._servers = self._servers, []
        for server in servers:
            server.shutdown(grace_period_seconds=0, wait=False)
        return message.create_response(MessageType.RESPONSE_OK)

    def _handle_shutdown(self, message: PSMessage) -> PSMessage:
        threading.Thread(target=self.shutdown, daemon=True).start()
        return message.create_response(MessageType.RESPONSE_OK)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def servers(self) -> List[PSServer]:
        with self._lock:
            return list(self._servers)
