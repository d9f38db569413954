"""
PS Orchestrator - control plane of a parameter-server training cluster.

This package provides:
- PSMainClient: Control client driving one job from PS startup to termination
- MatrixContext / ModelContext: Declarations of matrices and model locations
- BaseTask: Interface of user computation run by the worker pool
- PSConfig: Configuration for the job and its cluster
"""

from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.contexts import MatrixContext, ModelContext
from ps_orchestrator.errors import ClusterError, ErrorKind, TaskFailureError
from ps_orchestrator.worker.task import BaseTask, TaskContext
from ps_orchestrator.client.main_client import PSMainClient, ClientState, StateCode

__version__ = "0.2.0"
__all__ = [
    "PSMainClient",
    "ClientState",
    "StateCode",
    "PSConfig",
    "MatrixContext",
    "ModelContext",
    "BaseTask",
    "TaskContext",
    "ClusterError",
    "ErrorKind",
    "TaskFailureError",
]
