"""
Interactive node consoles.
"""

from .bridge import (
    CloseReason,
    ConsoleBridge,
    ConsoleOpener,
    ConsoleResult,
    ConsoleSession,
    RemoteStream,
    terminal_size,
)
from .k8s_exec import ExecStream, KubernetesExecOpener, decode_frame, encode_frame, exec_url

__all__ = [
    # Bridge
    "ConsoleBridge",
    "ConsoleSession",
    "ConsoleResult",
    "CloseReason",
    "ConsoleOpener",
    "RemoteStream",
    "terminal_size",
    # Kubernetes exec
    "KubernetesExecOpener",
    "ExecStream",
    "encode_frame",
    "decode_frame",
    "exec_url",
]
