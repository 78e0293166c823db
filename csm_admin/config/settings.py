"""
Client configuration.

One immutable ClientConfig drives the whole library: endpoints, proxy,
TLS trust, retry/backoff, poll cadence and deadlines.

Loading order (later wins):
1. dataclass defaults
2. YAML file top-level keys
3. YAML file `sites.<site>` section (deep merged)
4. CSM_* environment variables

Example file:
    site: alps
    max_retry_attempts: 5
    sites:
      alps:
        base_url: https://api.cmn.alps.example.com/apis
        root_cert: ~/.config/csm/alps_root_cert.pem
        proxy_url: socks5h://127.0.0.1:1080

Usage:
    from csm_admin.config import ClientConfig

    config = ClientConfig.from_yaml("~/.config/csm/config.yaml")
    config = ClientConfig.from_env()
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..errors import ConfigError
from .env_config import ENV_VARS, read_env, validate_field

logger = logging.getLogger(__name__)

# Path of each backend below the API gateway
BACKEND_PATHS = {
    "hsm": "/smd/hsm/v2",
    "pcs": "/power-control/v1",
    "bos": "/bos/v2",
    "cfs": "/cfs/v3",
    "ims": "/ims/v3",
    "bss": "/bss/boot/v1",
}


@dataclass(frozen=True)
class ClientConfig:
    """All tunables of the client library."""

    base_url: Optional[str] = None
    hsm_url: Optional[str] = None
    pcs_url: Optional[str] = None
    bos_url: Optional[str] = None
    cfs_url: Optional[str] = None
    ims_url: Optional[str] = None
    bss_url: Optional[str] = None
    keycloak_url: Optional[str] = None
    vault_url: Optional[str] = None
    k8s_api_url: Optional[str] = None
    site_name: Optional[str] = None

    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    token: Optional[str] = field(default=None, repr=False)
    root_cert: Optional[Path] = None
    proxy_url: Optional[str] = None

    max_retry_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    request_timeout: float = 30.0
    token_refresh_margin: float = 60.0
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 30.0

    poll_interval: float = 3.0
    poll_jitter: float = 0.1
    operation_deadline: float = 900.0
    cancel_timeout: float = 10.0
    batch_size: int = 0

    console_namespace: str = "services"
    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def field_names(cls):
        return {f.name for f in dataclasses.fields(cls)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClientConfig":
        unknown = set(data) - cls.field_names()
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")
        values = dict(data)
        for name, value in data.items():
            env_var = ENV_VARS.get(name)
            if env_var is not None and isinstance(value, str) and env_var.var_type in ("int", "float", "bool"):
                values[name] = env_var.parse(value)
        if values.get("root_cert") is not None:
            values["root_cert"] = Path(str(values["root_cert"])).expanduser()
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = None, base: Mapping[str, Any] = None) -> "ClientConfig":
        values = dict(base or {})
        values.update(read_env(environ))
        return cls.from_dict(values)

    @classmethod
    def from_yaml(
        cls, path, site: str = None, environ: Mapping[str, str] = None, use_env: bool = True
    ) -> "ClientConfig":
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                document = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}")
        if not isinstance(document, dict):
            raise ConfigError(f"{path}: top level must be a mapping")

        sites = document.pop("sites", None) or {}
        site = site or document.pop("site", None)
        document.pop("site", None)
        values = document
        if site:
            if site not in sites:
                raise ConfigError(f"Site '{site}' not defined in {path}; known: {sorted(sites)}")
            values = _merge_config(values, sites[site] or {})
            values.setdefault("site_name", site)

        logger.debug(f"Loaded configuration from {path} (site={site or '-'})")
        if use_env:
            return cls.from_env(environ, base=values)
        return cls.from_dict(values)

    def replace(self, **changes) -> "ClientConfig":
        return dataclasses.replace(self, **changes)

    # ------------------------------------------------------------------
    # Validation and derived values
    # ------------------------------------------------------------------

    def validate(self) -> None:
        for name in self.field_names():
            validate_field(name, getattr(self, name))
        if self.backoff_max < self.backoff_base:
            raise ConfigError("backoff_max must not be smaller than backoff_base")
        if self.root_cert is not None and not Path(self.root_cert).exists():
            raise ConfigError(f"root_cert not found: {self.root_cert}")

    def backend_url(self, backend: str) -> str:
        """Base URL of a backend: explicit override, else gateway + standard path."""
        if backend not in BACKEND_PATHS:
            raise ConfigError(f"Unknown backend '{backend}'")
        override = getattr(self, f"{backend}_url")
        if override:
            return override.rstrip("/")
        if not self.base_url:
            raise ConfigError(f"No base_url configured (needed for {backend})")
        return self.base_url.rstrip("/") + BACKEND_PATHS[backend]

    def keycloak_base(self) -> str:
        if self.keycloak_url:
            return self.keycloak_url.rstrip("/")
        if self.base_url and self.base_url.rstrip("/").endswith("/apis"):
            return self.base_url.rstrip("/")[: -len("/apis")] + "/keycloak"
        raise ConfigError("No keycloak_url configured")

    @property
    def proxies(self) -> Optional[Dict[str, str]]:
        if not self.proxy_url:
            return None
        return {"http": self.proxy_url, "https": self.proxy_url}

    @property
    def verify(self):
        """requests' verify argument: the CA bundle path when configured."""
        return str(self.root_cert) if self.root_cert else True

    def to_dict(self, include_sensitive: bool = False) -> Dict[str, Any]:
        result = {}
        for name in sorted(self.field_names()):
            value = getattr(self, name)
            env_var = ENV_VARS.get(name)
            if env_var is not None and env_var.sensitive and not include_sensitive:
                value = "***" if value else None
            elif isinstance(value, Path):
                value = str(value)
            result[name] = value
        return result


def _merge_config(base: Dict, override: Dict) -> Dict:
    """Deep merge override config into base config."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_config(result[key], value)
        else:
            result[key] = value
    return result
