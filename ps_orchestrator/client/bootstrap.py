"""Bootstrapping of the master and the PS shards."""

import threading
import time
from typing import Any, Dict, List, Optional

from ps_orchestrator.communication.protocol import MessageType, ServerInfo
from ps_orchestrator.communication.rpc_handler import RPCClient, RetryPolicy
from ps_orchestrator.errors import ClusterError, ConnectivityError, ErrorKind
from ps_orchestrator.server.master import Master
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.logging import get_logger


class ClusterBootstrapper:
    """
    Brings up the PS tier and waits until enough shards are ready.

    A master is started in-process unless ``config.master_host`` points at
    one that is already running. Shards are requested from the master and
    then pinged until ``config.quorum_size()`` of them answer.
    """

    def __init__(
        self,
        config: PSConfig,
        rpc_client: RPCClient,
        kill_event: Optional[threading.Event] = None
    ):
        """
        Initialize bootstrapper.

        Args:
            config: Job configuration
            rpc_client: Client used to reach the master and the shards
            kill_event: Interrupts the readiness wait when set
        """
        self.config = config
        self.logger = get_logger("bootstrapper")
        self._rpc_client = rpc_client
        self._kill_event = kill_event or threading.Event()

        self._master: Optional[Master] = None
        self._master_info: Optional[ServerInfo] = None
        self._shards: List[ServerInfo] = []
        self._lock = threading.Lock()

    def start_ps_server(self) -> List[ServerInfo]:
        """
        Start the PS tier; returns the ready shards.

        Calling it again once the tier is up returns the same shards.

        Raises:
            ConnectivityError: the master is unreachable, or the quorum was
                not reached within ``startup_timeout_seconds``
            ClusterError: kind KILLED when interrupted by ``kill``
        """
        with self._lock:
            if self._shards:
                return list(self._shards)

            if self._kill_event.is_set():
                raise ClusterError("PS startup was killed", kind=ErrorKind.KILLED)

            start_time = time.time()
            try:
                master = self._start_master()

                self.logger.info(f"Requesting {self.config.num_servers} PS shards from {master.address}")
                response = self._rpc_client.request(
                    master.host,
                    master.port,
                    MessageType.ALLOCATE_PS,
                    {"num_servers": self.config.num_servers},
                    cancel_event=self._kill_event,
                )
                servers = [ServerInfo.from_dict(s) for s in response["servers"]]
                shards = self._wait_for_quorum(servers, start_time)
            except ClusterError:
                # A kill racing with startup may have missed the local master
                if self._kill_event.is_set() and self._master is not None:
                    self._master.kill()
                    self._master = None
                raise

            self._shards = shards
            self.logger.info(
                f"PS tier ready: {len(self._shards)}/{len(servers)} shards "
                f"in {time.time() - start_time:.2f}s"
            )
            return list(self._shards)

    def _start_master(self) -> ServerInfo:
        if self._master_info is not None:
            return self._master_info

        if self.config.master_host:
            self._master_info = ServerInfo(
                server_id=-1,
                host=self.config.master_host,
                port=self.config.master_port,
            )
        else:
            try:
                self._master = Master(self.config)
                self._master_info = self._master.start()
            except OSError as e:
                self._master = None
                raise ConnectivityError("Could not start the master", cause=e)
        return self._master_info

    def _wait_for_quorum(self, servers: List[ServerInfo], start_time: float) -> List[ServerInfo]:
        quorum = self.config.quorum_size()
        if len(servers) < quorum:
            raise ConnectivityError(f"Master allocated {len(servers)} shards, quorum is {quorum}")

        single_attempt = RetryPolicy(attempts=1)
        ready: Dict[int, ServerInfo] = {}
        delay = self.config.backoff_initial_seconds

        while True:
            for server in servers:
                if server.server_id in ready:
                    continue
                try:
                    self._rpc_client.request(
                        server.host, server.port, MessageType.PING, retry_policy=single_attempt
                    )
                except ConnectivityError as e:
                    self.logger.debug(f"Shard {server.server_id} not ready: {e}")
                    continue
                server.status = "ready"
                ready[server.server_id] = server

            if len(ready) >= quorum:
                return [ready[sid] for sid in sorted(ready)]

            elapsed = time.time() - start_time
            remaining = self.config.startup_timeout_seconds - elapsed
            if remaining <= 0:
                raise ConnectivityError(
                    f"Only {len(ready)} of {quorum} required shards ready after {elapsed:.1f}s"
                )
            if self._kill_event.wait(min(delay, remaining)):
                raise ClusterError("PS startup was killed", kind=ErrorKind.KILLED)
            delay = min(delay * 2, self.config.backoff_max_seconds)

    @property
    def shards(self) -> List[ServerInfo]:
        return list(self._shards)

    @property
    def master_info(self) -> Optional[ServerInfo]:
        return self._master_info

    def get_cluster_stats(self) -> Dict[str, Any]:
        """Collect statistics from every ready shard."""
        stats: Dict[str, Any] = {"num_servers": len(self._shards), "servers": []}
        single_attempt = RetryPolicy(attempts=1)
        for server in self._shards:
            try:
                stats["servers"].append(self._rpc_client.request(
                    server.host, server.port, MessageType.GET_STATS, retry_policy=single_attempt
                ))
            except ClusterError as e:
                stats["servers"].append({"server_id": server.server_id, "error": str(e)})
        return stats

    def shutdown(self, grace_period_seconds: float = 5.0):
        """Gracefully stop the shards and the master."""
        shards, self._shards = self._shards, []
        if self._master is not None:
            self._master.shutdown(grace_period_seconds=grace_period_seconds)
            self._master = None
        elif self._master_info is not None and shards:
            try:
                self._rpc_client.request(
                    self._master_info.host,
                    self._master_info.port,
                    MessageType.SHUTDOWN,
                    retry_policy=RetryPolicy(attempts=1),
                )
            except ClusterError as e:
                self.logger.warning(f"Master shutdown request failed: {e}")
        self._master_info = None

    def kill(self, ack_timeout: float = 0.5) -> List[int]:
        """
        Stop the PS tier without waiting for acknowledgement.

        Returns:
            Shard ids that may still be running
        """
        self._kill_event.set()
        shards, self._shards = self._shards, []

        stragglers: List[int] = []
        if self._master is not None:
            stragglers = self._master.kill(ack_timeout=ack_timeout)
            self._master = None
        elif self._master_info is not None:
            try:
                self._rpc_client.request(
                    self._master_info.host,
                    self._master_info.port,
                    MessageType.KILL_PS,
                    retry_policy=RetryPolicy(attempts=1),
                )
            except ClusterError as e:
                self.logger.warning(f"Kill request to master failed: {e}")
                stragglers = [s.server_id for s in shards]
        self._master_info = None
        return stragglers
