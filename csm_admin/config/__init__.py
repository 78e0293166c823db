# Configuration module
from ..errors import ConfigError
from .env_config import ENV_VARS, EnvVar, get_env_var_docs, read_env
from .settings import BACKEND_PATHS, ClientConfig

__all__ = [
    "ClientConfig",
    "ConfigError",
    "EnvVar",
    "ENV_VARS",
    "BACKEND_PATHS",
    "read_env",
    "get_env_var_docs",
]
