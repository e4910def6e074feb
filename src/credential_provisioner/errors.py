"""Credential provisioning exceptions."""

from __future__ import annotations

# Status codes reported when no upstream response was received
TIMEOUT_STATUS = 408
TRANSPORT_ERROR_STATUS = 503

# Upstream bodies are trimmed before being echoed in messages
MAX_BODY_IN_MESSAGE = 300


class ProvisioningError(Exception):
    """Base exception for credential provisioning failures.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code (if applicable)
        response_body: Raw upstream response body (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: dict | str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body

    @property
    def kind(self) -> str:
        """Stable name of the error kind."""
        return type(self).__name__

    def __str__(self) -> str:
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message


class EntropyUnavailableError(ProvisioningError):
    """Raised when the OS random source cannot be read."""

    def __init__(self, message: str = "Secure random source is unavailable.") -> None:
        super().__init__(message)


class ConfigMissingError(ProvisioningError):
    """Raised when a provider has no configuration."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider {provider} is not configured.")
        self.provider = provider


class UnsupportedFlowError(ProvisioningError):
    """Raised when a provider is driven through a flow it does not use."""

    def __init__(self, provider: str, flow: str) -> None:
        super().__init__(f"Provider {provider} does not support the {flow} flow.")
        self.provider = provider
        self.flow = flow


class MissingCodeError(ProvisioningError):
    """Raised when complete is called without an authorization code."""

    def __init__(self, message: str = "Missing authorization code.") -> None:
        super().__init__(message)


class SessionNotFoundError(ProvisioningError):
    """Raised when no in-flight authorization exists."""

    def __init__(
        self,
        message: str = "OAuth session not found. Please start the authentication process again.",
    ) -> None:
        super().__init__(message)


class SessionExpiredError(ProvisioningError):
    """Raised when an in-flight authorization outlived its TTL."""

    def __init__(self, message: str = "OAuth session expired. Please try again.") -> None:
        super().__init__(message)


class TokenExchangeError(ProvisioningError):
    """Raised when the token endpoint rejects the exchange."""

    def __init__(
        self,
        status_code: int,
        response_body: dict | str | None = None,
        message: str = "Token exchange failed",
    ) -> None:
        super().__init__(_with_body(message, response_body), status_code, response_body)


class CredentialIssuanceError(ProvisioningError):
    """Raised when the API key endpoint refuses to mint a credential."""

    def __init__(
        self,
        status_code: int,
        response_body: dict | str | None = None,
        message: str = "API key creation failed",
    ) -> None:
        super().__init__(_with_body(message, response_body), status_code, response_body)


class CredentialMetadataError(ProvisioningError):
    """Raised when a stored credential carries unreadable metadata."""

    def __init__(self, provider: str, detail: str) -> None:
        super().__init__(f"Credential metadata for {provider} is corrupt: {detail}")
        self.provider = provider


class CredentialStoreError(ProvisioningError):
    """Error during credential storage operations."""


def _with_body(message: str, body: dict | str | None) -> str:
    if not body:
        return message
    text = str(body)
    if len(text) > MAX_BODY_IN_MESSAGE:
        text = text[:MAX_BODY_IN_MESSAGE] + "..."
    return f"{message}: {text}"
