"""
Wires configuration into ready-to-use backend adapters.

All adapters share one requests.Session (one connection pool), one
CredentialManager and the proxy/TLS settings from ClientConfig.

Usage:
    from csm_admin.client import build_clients

    clients = build_clients(ClientConfig.from_env())
    groups = clients.inventory.list_group_labels()
    clients.close()
"""

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from ..config import ClientConfig
from ..errors import ConfigError
from .bos import BootClient
from .bss import BootParametersClient
from .cfs import ConfigurationClient
from .circuit_breaker import CircuitBreaker, CircuitConfig
from .credentials import (
    CredentialManager,
    KeycloakTokenProvider,
    StaticTokenProvider,
    TokenProvider,
)
from .hsm import InventoryClient
from .ims import ImageClient
from .pcs import PowerClient
from .transport import RetryPolicy, ServiceClient
from .vault import VaultClient

logger = logging.getLogger(__name__)


def token_provider_for(config: ClientConfig, session: requests.Session = None) -> TokenProvider:
    if config.token:
        return StaticTokenProvider(config.token)
    if config.username and config.password:
        return KeycloakTokenProvider(
            config.keycloak_base(),
            config.username,
            config.password,
            session=session,
            verify=config.verify,
            proxies=config.proxies,
            timeout=config.request_timeout,
        )
    raise ConfigError("No credentials configured: set token, or username and password")


@dataclass
class CsmClients:
    config: ClientConfig
    session: requests.Session
    credentials: CredentialManager
    inventory: InventoryClient
    power: PowerClient
    boot: BootClient
    configuration: ConfigurationClient
    image: ImageClient
    boot_parameters: BootParametersClient
    vault: Optional[VaultClient] = None

    def close(self) -> None:
        self.credentials.close()
        self.session.close()


def build_service_client(
    config: ClientConfig,
    backend: str,
    base_url: str,
    credentials: Optional[CredentialManager],
    session: requests.Session,
) -> ServiceClient:
    breaker = CircuitBreaker.get(
        backend,
        CircuitConfig(
            failure_threshold=config.circuit_failure_threshold,
            recovery_timeout=config.circuit_recovery_timeout,
        ),
    )
    return ServiceClient(
        backend,
        base_url,
        credentials,
        session=session,
        retry=RetryPolicy(
            max_attempts=config.max_retry_attempts,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
        ),
        request_timeout=config.request_timeout,
        proxies=config.proxies,
        verify=config.verify,
        breaker=breaker,
    )


def build_clients(config: ClientConfig, token_provider: TokenProvider = None) -> CsmClients:
    session = requests.Session()
    credentials = CredentialManager(
        token_provider or token_provider_for(config, session),
        refresh_margin=config.token_refresh_margin,
    )

    def service(backend: str) -> ServiceClient:
        return build_service_client(config, backend, config.backend_url(backend), credentials, session)

    vault = None
    if config.vault_url and config.site_name:
        vault = VaultClient(
            build_service_client(config, "vault", config.vault_url, None, session), config.site_name
        )

    logger.debug(f"Built backend clients for {config.base_url or 'explicit backend URLs'}")
    return CsmClients(
        config=config,
        session=session,
        credentials=credentials,
        inventory=InventoryClient(service("hsm")),
        power=PowerClient(service("pcs")),
        boot=BootClient(service("bos")),
        configuration=ConfigurationClient(service("cfs")),
        image=ImageClient(service("ims")),
        boot_parameters=BootParametersClient(service("bss")),
        vault=vault,
    )
