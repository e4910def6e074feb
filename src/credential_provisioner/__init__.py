"""Credential Provisioner.

Provisions provider API credentials through OAuth flows and keeps them
in a credential store for the host application.
"""

__version__ = "0.1.0"

from credential_provisioner.config import Config, ConfigError, Provider, load_config
from credential_provisioner.oauth.orchestrator import FlowOrchestrator

__all__ = [
    "Config",
    "ConfigError",
    "FlowOrchestrator",
    "Provider",
    "__version__",
    "load_config",
]
