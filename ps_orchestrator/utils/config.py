"""Configuration management for the PS orchestrator."""

from dataclasses import dataclass, field, fields
from typing import Optional, Dict, Any, Union
import json


JOB_MODES = ("train", "inctrain", "predict")
STORAGE_BACKENDS = ("local", "s3")
PARTITION_SCHEMES = ("range", "hash")


@dataclass
class PSConfig:
    """
    Configuration for a PS training job and its control plane.

    Attributes:
        num_servers: Number of PS shards to allocate
        ps_quorum: Shards that must ack readiness ("all", "majority" or a count)
        server_host: Host the master and shards bind to
        server_port_base: Base port for shards (0 = ephemeral ports)
        master_host: Host of an already running master (None = start one locally)
        master_port: Port of the master (0 = ephemeral when started locally)

        timeout_seconds: Timeout for a single RPC call
        startup_timeout_seconds: Time allowed for the PS quorum to become ready
        connect_retries: Attempts for a call failing with a transient socket error
        backoff_initial_seconds: First retry delay
        backoff_max_seconds: Upper bound of the retry delay

        num_workers: Size of the worker pool
        num_tasks: Number of tasks per run (default: num_workers)
        default_task_type: Task type used by the deprecated ``run()``
        task_failure_tolerance: Fraction of tasks allowed to fail (0 = strict)

        action_type: Job mode ("train", "inctrain", "predict")
        input_path: Storage path holding the job input
        output_path: Final output location (predict mode)
        temp_path: Scratch directory for task output and staged saves
        checkpoint_path: Root location for published checkpoints
        max_checkpoints_to_keep: Retention for published checkpoints (0 = keep all)

        storage_backend: "local" or "s3"
        storage_base_path: Root directory of the local backend
        s3_region / s3_endpoint_url / s3_max_concurrency /
        s3_multipart_threshold: S3 backend settings

        compression: Compress large RPC payloads
        compression_algorithm: Only "lz4" is supported
        max_message_size: Largest accepted RPC frame in bytes
        num_worker_threads: Handler threads per RPC server
        virtual_nodes_per_server: Virtual nodes on the partition hash ring
        partition_scheme: Block placement, "range" (round-robin) or "hash"

        log_level: Logging level name for component loggers
        log_file: Optional log file shared by component loggers
    """

    # Cluster settings
    num_servers: int = 3
    ps_quorum: Union[str, int] = "all"
    server_host: str = "127.0.0.1"
    server_port_base: int = 0
    master_host: Optional[str] = None
    master_port: int = 0

    # Communication settings
    timeout_seconds: float = 30.0
    startup_timeout_seconds: float = 60.0
    shutdown_grace_seconds: float = 10.0
    connect_retries: int = 5
    backoff_initial_seconds: float = 0.1
    backoff_max_seconds: float = 2.0
    compression: bool = True
    compression_algorithm: str = "lz4"
    max_message_size: int = 256 * 1024 * 1024
    num_worker_threads: int = 4
    virtual_nodes_per_server: int = 150
    partition_scheme: str = "range"

    # Task settings
    num_workers: int = 4
    num_tasks: Optional[int] = None
    default_task_type: Optional[str] = None
    task_failure_tolerance: float = 0.0

    # Job settings
    action_type: str = "train"
    input_path: Optional[str] = None
    output_path: Optional[str] = None
    temp_path: str = "_temporary"
    checkpoint_path: str = "checkpoints"
    max_checkpoints_to_keep: int = 0

    # Storage settings
    storage_backend: str = "local"
    storage_base_path: str = "/tmp/ps_orchestrator"
    s3_region: str = "us-east-1"
    s3_endpoint_url: Optional[str] = None
    s3_max_concurrency: int = 10
    s3_multipart_threshold: int = 8 * 1024 * 1024

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Free-form settings handed to tasks
    task_params: Dict[str, Any] = field(default_factory=dict)

    @property
    def tasks_per_run(self) -> int:
        return self.num_tasks or self.num_workers

    def quorum_size(self) -> int:
        """Number of shards that must ack readiness."""
        if self.ps_quorum == "all":
            return self.num_servers
        if self.ps_quorum == "majority":
            return self.num_servers // 2 + 1
        return int(self.ps_quorum)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for serialization."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PSConfig":
        """Create config from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> "PSConfig":
        return cls.from_dict(json.loads(json_str))

    def validate(self) -> None:
        """Validate configuration values."""
        if self.num_servers < 1:
            raise ValueError("num_servers must be at least 1")
        if self.ps_quorum not in ("all", "majority"):
            try:
                quorum = int(self.ps_quorum)
            except (TypeError, ValueError):
                raise ValueError(f"Invalid ps_quorum: {self.ps_quorum}")
            if not 1 <= quorum <= self.num_servers:
                raise ValueError("ps_quorum must be between 1 and num_servers")
        if self.num_workers < 1:
            raise ValueError("num_workers must be at least 1")
        if self.num_tasks is not None and self.num_tasks < 1:
            raise ValueError("num_tasks must be at least 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.startup_timeout_seconds <= 0:
            raise ValueError("startup_timeout_seconds must be positive")
        if self.shutdown_grace_seconds < 0:
            raise ValueError("shutdown_grace_seconds must be >= 0")
        if self.connect_retries < 1:
            raise ValueError("connect_retries must be at least 1")
        if self.backoff_initial_seconds <= 0 or self.backoff_max_seconds < self.backoff_initial_seconds:
            raise ValueError("backoff must satisfy 0 < initial <= max")
        if not 0.0 <= self.task_failure_tolerance < 1.0:
            raise ValueError("task_failure_tolerance must be in [0, 1)")
        if self.action_type not in JOB_MODES:
            raise ValueError(f"Invalid action_type: {self.action_type}")
        if self.partition_scheme not in PARTITION_SCHEMES:
            raise ValueError(f"Invalid partition_scheme: {self.partition_scheme}")
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ValueError(f"Invalid storage_backend: {self.storage_backend}")
        if self.max_checkpoints_to_keep < 0:
            raise ValueError("max_checkpoints_to_keep must be >= 0")
        if self.action_type == "predict" and not self.output_path:
            raise ValueError("predict mode requires output_path")
