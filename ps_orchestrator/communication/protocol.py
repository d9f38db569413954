"""Message protocol between the control client, the master and PS shards."""

from enum import IntEnum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import time
import uuid


class MessageType(IntEnum):
    """Message types for the control protocol."""

    # Liveness
    PING = 1
    GET_STATS = 2

    # Master operations
    ALLOCATE_PS = 10
    GET_PS_STATUS = 11
    KILL_PS = 12

    # Matrix lifecycle on a shard
    CREATE_MATRICES = 20
    DROP_MATRICES = 21
    INIT_MATRICES = 22

    # Matrix values
    PULL_PARTITIONS = 30
    PUSH_PARTITIONS = 31

    # Lifecycle
    SHUTDOWN = 40

    # Responses
    RESPONSE_OK = 100
    RESPONSE_ERROR = 101
    RESPONSE_DATA = 102


@dataclass
class PSMessage:
    """
    Wire protocol message.

    ``payload`` is any msgpack-encodable structure; numpy arrays are allowed
    anywhere inside it.
    """

    msg_type: MessageType
    client_id: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    payload: Any = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "msg_type": int(self.msg_type),
            "client_id": self.client_id,
            "request_id": self.request_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PSMessage":
        return cls(
            msg_type=MessageType(data["msg_type"]),
            client_id=data["client_id"],
            request_id=data["request_id"],
            payload=data.get("payload"),
            timestamp=data["timestamp"],
        )

    def create_response(
        self,
        msg_type: MessageType = MessageType.RESPONSE_OK,
        payload: Any = None
    ) -> "PSMessage":
        """Create a response message for this request."""
        return PSMessage(
            msg_type=msg_type,
            client_id="server",
            request_id=self.request_id,
            payload=payload,
        )

    def error_response(self, error: str) -> "PSMessage":
        return self.create_response(MessageType.RESPONSE_ERROR, {"error": error})

    @property
    def is_error(self) -> bool:
        return self.msg_type == MessageType.RESPONSE_ERROR

    @property
    def error(self) -> Optional[str]:
        if not self.is_error:
            return None
        if isinstance(self.payload, dict):
            return str(self.payload.get("error"))
        return str(self.payload)


@dataclass
class ServerInfo:
    """Endpoint and status of a PS shard (or of the master)."""

    server_id: int
    host: str
    port: int
    status: str = "unknown"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "host": self.host,
            "port": self.port,
            "status": self.status,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerInfo":
        return cls(
            server_id=data["server_id"],
            host=data["host"],
            port=data["port"],
            status=data.get("status", "unknown"),
            metadata=data.get("metadata", {}),
        )
