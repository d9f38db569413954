"""Control client components of the PS orchestrator."""

from ps_orchestrator.client.main_client import PSMainClient, ClientState, StateCode
from ps_orchestrator.client.matrix_registry import MatrixRegistry
from ps_orchestrator.client.bootstrap import ClusterBootstrapper
from ps_orchestrator.client.model_manager import ModelLifecycleManager, LegacyModelAdapter
from ps_orchestrator.client.task_dispatcher import TaskDispatcher, TaskRegistry
from ps_orchestrator.client.barrier import CompletionBarrier

__all__ = [
    "PSMainClient",
    "ClientState",
    "StateCode",
    "MatrixRegistry",
    "ClusterBootstrapper",
    "ModelLifecycleManager",
    "LegacyModelAdapter",
    "TaskDispatcher",
    "TaskRegistry",
    "CompletionBarrier",
]
