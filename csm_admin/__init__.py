"""
csm-admin: administrative client for the CSM ("Shasta") control plane.

Resolves node-group expressions to sets of hardware identifiers, drives
power, boot and configuration operations across them, and opens node
consoles.

Usage:
    from csm_admin import ClientConfig, build_clients, OperationOrchestrator
    from csm_admin import InventoryContext, OperationRequest, resolve

    config = ClientConfig.from_yaml("~/.config/csm/config.yaml", site="alps")
    clients = build_clients(config)

    nodes = resolve("compute & ~@maintenance", InventoryContext(clients.inventory, base_group="compute"))
    report = OperationOrchestrator.from_clients(clients).run(OperationRequest.power(nodes, "off"))
"""

__version__ = "1.0.0"

from .client import CsmClients, ServiceClient, build_clients
from .config import ClientConfig
from .console import ConsoleBridge, KubernetesExecOpener
from .deadline import Deadline
from .errors import (
    AccessDenied,
    AmbiguousComplement,
    AuthenticationFailed,
    BackendUnavailable,
    ConfigError,
    CsmError,
    DeadlineExceeded,
    ExpressionSyntaxError,
    InvalidIdentifier,
    MalformedResponse,
    RequestRejected,
    ServiceError,
    StreamClosed,
    SubmissionFailed,
    TargetUnreachable,
    TransportError,
    UnknownGroup,
)
from .groups import GroupResolver, InventoryContext, StaticContext, parse_expression, resolve
from .log_context import init_logging, operation_context
from .nodeset import NodeSet
from .orchestrator import (
    NodeStatus,
    OperationOrchestrator,
    OperationReport,
    OperationRequest,
    SessionState,
)
from .xname import Xname, compare, parse

__all__ = [
    "__version__",
    # Identifiers
    "Xname",
    "parse",
    "compare",
    "NodeSet",
    # Groups
    "parse_expression",
    "resolve",
    "GroupResolver",
    "StaticContext",
    "InventoryContext",
    # Clients
    "ClientConfig",
    "CsmClients",
    "ServiceClient",
    "build_clients",
    "Deadline",
    # Operations
    "OperationOrchestrator",
    "OperationRequest",
    "OperationReport",
    "NodeStatus",
    "SessionState",
    # Console
    "ConsoleBridge",
    "KubernetesExecOpener",
    # Logging
    "init_logging",
    "operation_context",
    # Errors
    "CsmError",
    "InvalidIdentifier",
    "ExpressionSyntaxError",
    "UnknownGroup",
    "AmbiguousComplement",
    "AccessDenied",
    "ServiceError",
    "AuthenticationFailed",
    "RequestRejected",
    "MalformedResponse",
    "TransportError",
    "BackendUnavailable",
    "DeadlineExceeded",
    "SubmissionFailed",
    "TargetUnreachable",
    "StreamClosed",
    "ConfigError",
]
