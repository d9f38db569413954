"""Communication layer for the PS orchestrator."""

from ps_orchestrator.communication.protocol import MessageType, PSMessage, ServerInfo
from ps_orchestrator.communication.serialization import Serializer
from ps_orchestrator.communication.rpc_handler import RPCServer, RPCClient, RetryPolicy

__all__ = [
    "MessageType",
    "PSMessage",
    "ServerInfo",
    "Serializer",
    "RPCServer",
    "RPCClient",
    "RetryPolicy",
]
