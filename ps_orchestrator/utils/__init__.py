"""Utility modules for the PS orchestrator."""

from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.sharding import ConsistentHashRing
from ps_orchestrator.utils.logging import PSLogger

__all__ = ["PSConfig", "ConsistentHashRing", "PSLogger"]
