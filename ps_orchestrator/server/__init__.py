"""Master and PS shard components."""

from ps_orchestrator.server.master import Master
from ps_orchestrator.server.ps_server import PSServer
from ps_orchestrator.server.matrix_store import MatrixStore

__all__ = [
    "Master",
    "PSServer",
    "MatrixStore",
]
