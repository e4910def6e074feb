"""OAuth credential provisioning.

Authorization Code flow with PKCE (with optional API key issuance) and
polling browser logins, coordinated by FlowOrchestrator.
"""

from credential_provisioner.oauth.credential_store import (
    Credential,
    CredentialMetadata,
    CredentialStore,
    EncryptedFileCredentialStore,
    InMemoryCredentialStore,
    ProvisioningSource,
    create_credential_store,
)
from credential_provisioner.oauth.orchestrator import (
    CompleteResult,
    FlowOrchestrator,
    FlowState,
    LogoutResult,
    StartResult,
    StatusResult,
    WebLoginResult,
)
from credential_provisioner.oauth.pending import PendingLoginRegistry, PendingWebLogin
from credential_provisioner.oauth.pkce import (
    PKCEPair,
    generate_code_challenge,
    generate_pkce,
    generate_state,
)
from credential_provisioner.oauth.providers import (
    AuthorizationCodeAdapter,
    PollingLoginAdapter,
    ProviderAdapter,
    TokenSet,
    build_adapter,
)
from credential_provisioner.oauth.session import (
    AuthAttempt,
    InMemorySessionStore,
    SessionStore,
)

__all__ = [
    "AuthAttempt",
    "AuthorizationCodeAdapter",
    "CompleteResult",
    "Credential",
    "CredentialMetadata",
    "CredentialStore",
    "EncryptedFileCredentialStore",
    "FlowOrchestrator",
    "FlowState",
    "InMemoryCredentialStore",
    "InMemorySessionStore",
    "LogoutResult",
    "PKCEPair",
    "PendingLoginRegistry",
    "PendingWebLogin",
    "PollingLoginAdapter",
    "ProviderAdapter",
    "ProvisioningSource",
    "SessionStore",
    "StartResult",
    "StatusResult",
    "TokenSet",
    "WebLoginResult",
    "build_adapter",
    "create_credential_store",
    "generate_code_challenge",
    "generate_pkce",
    "generate_state",
]
