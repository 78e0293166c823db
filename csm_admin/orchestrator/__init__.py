"""
Multi-node operation orchestration.
"""

from .backends import (
    BootSessionBackend,
    CfsSessionBackend,
    ConfigApplyBackend,
    OperationBackend,
    PowerTransitionBackend,
)
from .cleanup import SessionCleaner, SessionCleanup
from .models import (
    NodeState,
    NodeStatus,
    OperationKind,
    OperationReport,
    OperationRequest,
    OperationSession,
    SessionState,
    classify_outcome,
)
from .orchestrator import OperationHandle, OperationOrchestrator, OrchestratorConfig

__all__ = [
    # Model
    "NodeState",
    "NodeStatus",
    "OperationKind",
    "OperationReport",
    "OperationRequest",
    "OperationSession",
    "SessionState",
    "classify_outcome",
    # Backends
    "OperationBackend",
    "PowerTransitionBackend",
    "BootSessionBackend",
    "ConfigApplyBackend",
    "CfsSessionBackend",
    # Orchestration
    "SessionCleaner",
    "SessionCleanup",
    "OperationOrchestrator",
    "OperationHandle",
    "OrchestratorConfig",
]
