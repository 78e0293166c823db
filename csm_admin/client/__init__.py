"""
Service client layer: resilient transport plus typed backend adapters.
"""

from .bos import BootClient, BootOperation
from .bss import BootParameters, BootParametersClient
from .cfs import ConfigSession, ConfigurationClient
from .credentials import (
    CredentialManager,
    IssuedToken,
    KeycloakTokenProvider,
    SecretToken,
    StaticTokenProvider,
    TokenProvider,
)
from .factory import CsmClients, build_clients
from .hsm import InventoryClient, NodeComponent, NodeGroup
from .ims import Image, ImageClient
from .pcs import PowerClient, PowerOperation
from .storage import ArtifactFetcher, HttpArtifactFetcher
from .transport import ApiRequest, ApiResponse, RetryPolicy, ServiceClient
from .vault import KubeCredentials, VaultClient

__all__ = [
    # Transport
    "ApiRequest",
    "ApiResponse",
    "RetryPolicy",
    "ServiceClient",
    # Credentials
    "CredentialManager",
    "IssuedToken",
    "KeycloakTokenProvider",
    "SecretToken",
    "StaticTokenProvider",
    "TokenProvider",
    # Adapters
    "InventoryClient",
    "NodeComponent",
    "NodeGroup",
    "PowerClient",
    "PowerOperation",
    "BootClient",
    "BootOperation",
    "BootParametersClient",
    "BootParameters",
    "ConfigurationClient",
    "ConfigSession",
    "ImageClient",
    "Image",
    "VaultClient",
    "KubeCredentials",
    "ArtifactFetcher",
    "HttpArtifactFetcher",
    # Wiring
    "CsmClients",
    "build_clients",
]
