"""
Secret store adapter (HashiCorp Vault).

Exchanges the caller's control-plane JWT for a Vault token, then reads the
Kubernetes client credentials the console bridge needs.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict

from ..errors import AuthenticationFailed, MalformedResponse
from .credentials import SecretToken
from .transport import ApiRequest, ServiceClient

logger = logging.getLogger(__name__)


@dataclass
class KubeCredentials:
    """PEM material for the cluster API; repr never shows the key."""

    ca_pem: bytes
    client_cert_pem: bytes
    client_key_pem: bytes

    @classmethod
    def from_kubeconfig_data(cls, data: Dict[str, Any]) -> "KubeCredentials":
        """From base64 fields as they appear in a kubeconfig."""
        try:
            return cls(
                ca_pem=base64.b64decode(data["certificate-authority-data"]),
                client_cert_pem=base64.b64decode(data["client-certificate-data"]),
                client_key_pem=base64.b64decode(data["client-key-data"]),
            )
        except (KeyError, TypeError, binascii.Error) as e:
            raise ValueError(f"incomplete cluster credentials: {e}")

    def __repr__(self) -> str:
        return "KubeCredentials(ca_pem=..., client_cert_pem=..., client_key_pem='***masked***')"


class VaultClient:
    def __init__(self, client: ServiceClient, site_name: str, role: str = "manta"):
        self.client = client
        self.site_name = site_name
        self.role = role

    def login(self, jwt_token: SecretToken) -> SecretToken:
        path = f"/v1/auth/jwt-manta-{self.site_name}/login"
        response = self.client.execute(
            ApiRequest(
                "POST",
                path,
                json={"jwt": jwt_token.reveal(), "role": self.role},
                headers={"X-Vault-Request": "true"},
            )
        )
        try:
            return SecretToken(response.payload["auth"]["client_token"])
        except (KeyError, TypeError):
            raise AuthenticationFailed("vault", self.client.url_for(path), reason="no client_token in response")

    def read_secret(self, vault_token: SecretToken, secret_path: str) -> Dict[str, Any]:
        path = f"/v1/{secret_path.lstrip('/')}"
        response = self.client.execute(
            ApiRequest("GET", path, headers={"X-Vault-Token": vault_token.reveal(), "X-Vault-Request": "true"})
        )
        try:
            data = response.payload["data"]
        except (KeyError, TypeError):
            raise MalformedResponse("vault", self.client.url_for(path), "no data in secret")
        # KV v2 nests the secret one level deeper
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        return data

    def kube_credentials(self, jwt_token: SecretToken) -> KubeCredentials:
        vault_token = self.login(jwt_token)
        try:
            data = self.read_secret(vault_token, f"manta/data/{self.site_name}/k8s")
        finally:
            vault_token.wipe()
        try:
            return KubeCredentials.from_kubeconfig_data(data)
        except ValueError as e:
            raise MalformedResponse("vault", self.client.base_url, str(e))
