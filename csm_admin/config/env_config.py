"""
Environment variable configuration.

Every ClientConfig option can be supplied as a CSM_* environment variable.
Each variable declares its type and the rules its value must satisfy;
sensitive values never reach the logs.

Usage:
    from csm_admin.config.env_config import read_env

    overrides = read_env()   # only the variables that are set, parsed and checked
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from ..errors import ConfigError

logger = logging.getLogger(__name__)

def _to_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")

def _to_path(value: str) -> Path:
    return Path(value).expanduser()

_CONVERTERS = {
    "str": str,
    "int": int,
    "float": float,
    "bool": _to_bool,
    "path": _to_path,
}

@dataclass
class EnvVar:
    """One CSM_* variable and the rules its value must satisfy."""

    name: str
    var_type: str = "str"  # key of _CONVERTERS
    description: str = ""
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None
    choices: Optional[List[str]] = None
    pattern: Optional[str] = None
    sensitive: bool = False
    fallback: Optional[str] = None  # legacy variable consulted when name is unset

    def parse(self, value: str) -> Any:
        converter = _CONVERTERS.get(self.var_type, str)
        try:
            return converter(value)
        except ValueError:
            raise ConfigError(f"{self.name}: expected {self.var_type}, got '{value}'")

    def check(self, value: Any, label: str = None) -> None:
        """Raise ConfigError unless value satisfies the rules."""
        if value is None:
            return
        problem = None
        if self.min_value is not None and value < self.min_value:
            problem = f"{value} is below minimum {self.min_value}"
        elif self.max_value is not None and value > self.max_value:
            problem = f"{value} exceeds maximum {self.max_value}"
        elif self.choices is not None and value not in self.choices:
            problem = f"'{value}' is not one of {self.choices}"
        elif self.pattern and isinstance(value, str) and not re.match(self.pattern, value):
            problem = f"'{value}' does not match {self.pattern}"
        if problem:
            raise ConfigError(f"{label or self.name}: {problem}")

    def get_value(self, environ: Mapping[str, str] = None) -> Any:
        """Parsed value from the environment, or None when unset or empty."""
        environ = os.environ if environ is None else environ
        raw = environ.get(self.name)
        if raw is None and self.fallback:
            raw = environ.get(self.fallback)
        if not raw:
            return None
        value = self.parse(raw)
        self.check(value)
        return value

_URL_PATTERN = r"^https?://"

# ClientConfig field name -> variable
ENV_VARS: Dict[str, EnvVar] = {
    # Endpoints
    "base_url": EnvVar(
        name="CSM_BASE_URL", pattern=_URL_PATTERN, description="CSM API gateway, e.g. https://api.cmn.site/apis"
    ),
    "hsm_url": EnvVar(name="CSM_HSM_URL", pattern=_URL_PATTERN, description="Inventory (HSM) base URL override"),
    "pcs_url": EnvVar(name="CSM_PCS_URL", pattern=_URL_PATTERN, description="Power (PCS) base URL override"),
    "bos_url": EnvVar(name="CSM_BOS_URL", pattern=_URL_PATTERN, description="Boot (BOS) base URL override"),
    "cfs_url": EnvVar(name="CSM_CFS_URL", pattern=_URL_PATTERN, description="Configuration (CFS) base URL override"),
    "ims_url": EnvVar(name="CSM_IMS_URL", pattern=_URL_PATTERN, description="Image (IMS) base URL override"),
    "bss_url": EnvVar(name="CSM_BSS_URL", pattern=_URL_PATTERN, description="Boot parameters (BSS) base URL override"),
    "keycloak_url": EnvVar(name="CSM_KEYCLOAK_URL", pattern=_URL_PATTERN, description="Keycloak base URL"),
    "vault_url": EnvVar(name="CSM_VAULT_URL", pattern=_URL_PATTERN, description="Vault base URL"),
    "k8s_api_url": EnvVar(name="CSM_K8S_API_URL", pattern=_URL_PATTERN, description="Kubernetes API server URL"),
    "site_name": EnvVar(name="CSM_SITE", description="Site name used for Vault paths"),
    # Security
    "username": EnvVar(name="CSM_USERNAME", description="Keycloak username"),
    "password": EnvVar(name="CSM_PASSWORD", sensitive=True, description="Keycloak password"),
    "token": EnvVar(name="CSM_TOKEN", sensitive=True, description="Pre-issued access token"),
    "root_cert": EnvVar(name="CSM_ROOT_CERT", var_type="path", description="CA bundle for the API gateway"),
    "proxy_url": EnvVar(
        name="CSM_PROXY_URL",
        fallback="SOCKS5",
        pattern=r"^(https?|socks5h?)://",
        description="Proxy for all backend traffic (falls back to $SOCKS5)",
    ),
    # Retries and timeouts
    "max_retry_attempts": EnvVar(
        name="CSM_MAX_RETRY_ATTEMPTS", var_type="int", min_value=1, max_value=20, description="Attempts per call"
    ),
    "backoff_base": EnvVar(name="CSM_BACKOFF_BASE", var_type="float", min_value=0, description="First retry delay (s)"),
    "backoff_max": EnvVar(name="CSM_BACKOFF_MAX", var_type="float", min_value=0, description="Retry delay ceiling (s)"),
    "request_timeout": EnvVar(
        name="CSM_REQUEST_TIMEOUT", var_type="float", min_value=0.1, description="Default per-call deadline (s)"
    ),
    "token_refresh_margin": EnvVar(
        name="CSM_TOKEN_REFRESH_MARGIN", var_type="float", min_value=0, description="Refresh this long before expiry (s)"
    ),
    "circuit_failure_threshold": EnvVar(
        name="CSM_CIRCUIT_FAILURE_THRESHOLD", var_type="int", min_value=1, description="Exhausted calls that open a circuit"
    ),
    "circuit_recovery_timeout": EnvVar(
        name="CSM_CIRCUIT_RECOVERY_TIMEOUT", var_type="float", min_value=0, description="Open-circuit wait (s)"
    ),
    # Operations
    "poll_interval": EnvVar(name="CSM_POLL_INTERVAL", var_type="float", min_value=0, description="Seconds between polls"),
    "poll_jitter": EnvVar(
        name="CSM_POLL_JITTER", var_type="float", min_value=0, max_value=1, description="Poll interval jitter fraction"
    ),
    "operation_deadline": EnvVar(
        name="CSM_OPERATION_DEADLINE", var_type="float", min_value=0, description="Operation deadline (s)"
    ),
    "cancel_timeout": EnvVar(
        name="CSM_CANCEL_TIMEOUT", var_type="float", min_value=0, description="Bound on best-effort cancel (s)"
    ),
    "batch_size": EnvVar(
        name="CSM_BATCH_SIZE", var_type="int", min_value=0, description="Nodes per backend job (0 = one job)"
    ),
    # Console
    "console_namespace": EnvVar(name="CSM_CONSOLE_NAMESPACE", description="Namespace of the console pods"),
    # Logging
    "log_level": EnvVar(
        name="CSM_LOG_LEVEL",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        description="Logging level",
    ),
}


def read_env(environ: Mapping[str, str] = None) -> Dict[str, Any]:
    """
    Parsed values of every CSM_* variable that is set.

    Raises:
        ConfigError: naming every invalid variable, not just the first
    """
    values = {}
    problems = []
    for field_name, env_var in ENV_VARS.items():
        try:
            value = env_var.get_value(environ)
        except ConfigError as e:
            problems.append(str(e))
            continue
        if value is None:
            continue
        values[field_name] = value
        logger.debug(f"Config: {env_var.name} = {'***' if env_var.sensitive else value}")

    if problems:
        message = "Invalid environment configuration:\n" + "\n".join(f"  {p}" for p in problems)
        logger.error(message)
        raise ConfigError(message)
    return values

def validate_field(field_name: str, value: Any) -> None:
    """Apply a variable's rules to a value that came from a file or code."""
    env_var = ENV_VARS.get(field_name)
    if env_var is not None:
        env_var.check(value, label=field_name)

def get_env_var_docs() -> str:
    """Markdown table of every variable."""
    rows = ["| Variable | Type | Description |", "|---|---|---|"]
    for env_var in ENV_VARS.values():
        note = f" (fallback: {env_var.fallback})" if env_var.fallback else ""
        rows.append(f"| `{env_var.name}` | {env_var.var_type} | {env_var.description}{note} |")
    return "# Environment Variables\n\n" + "\n".join(rows)
