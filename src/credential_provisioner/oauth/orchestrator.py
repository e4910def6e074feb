"""Flow orchestration.

Coordinates PKCE generation, session storage, provider adapters and the
credential store. Every public operation returns a result object; errors
never escape to the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from credential_provisioner.config import Config, FlowKind, Provider
from credential_provisioner.errors import (
    ConfigMissingError,
    MissingCodeError,
    ProvisioningError,
    SessionExpiredError,
    SessionNotFoundError,
    UnsupportedFlowError,
)
from credential_provisioner.logging_config import get_logger, unregister_secret
from credential_provisioner.oauth.credential_store import (
    Credential,
    CredentialMetadata,
    CredentialStore,
    ProvisioningSource,
)
from credential_provisioner.oauth.pending import PendingLoginRegistry, PendingWebLogin
from credential_provisioner.oauth.pkce import generate_pkce, generate_state
from credential_provisioner.oauth.providers import (
    AuthorizationCodeAdapter,
    PollingLoginAdapter,
    ProviderAdapter,
    WebLogin,
    build_adapter,
)
from credential_provisioner.oauth.session import AuthAttempt, SessionStore, session_key
from credential_provisioner.security import constant_time_equals, secret_hint, short_id

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = get_logger(__name__)


class FlowState(str, Enum):
    """Lifecycle of a provider's most recent flow."""

    IDLE = "idle"
    STARTED = "started"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass
class _Result:
    success: bool
    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def failure(cls, error: ProvisioningError) -> Any:
        return cls(success=False, error=error.message, error_kind=error.kind)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class StartResult(_Result):
    auth_url: str | None = None
    verifier: str | None = field(default=None, repr=False)
    state: str | None = field(default=None, repr=False)


@dataclass
class CompleteResult(_Result):
    api_key: str | None = field(default=None, repr=False)
    key_name: str | None = None


@dataclass
class StatusResult(_Result):
    authenticated: bool = False
    is_auto_provisioned: bool = False
    display_name: str | None = None
    secret_hint: str | None = None


@dataclass
class LogoutResult(_Result):
    pass


@dataclass
class WebLoginResult(_Result):
    auth_url: str | None = None
    flow_id: str | None = None
    user_code: str | None = None
    message: str | None = None


class FlowOrchestrator:
    """Runs credential provisioning flows for configured providers.

    Safe for concurrent use: stores serialize single-key access and no
    store call is made while a provider request is in flight. For one
    provider the last ``start`` wins.
    """

    def __init__(
        self,
        config: Config,
        session_store: SessionStore,
        credential_store: CredentialStore,
        adapters: Mapping[Provider, ProviderAdapter] | None = None,
        http_client: httpx.AsyncClient | None = None,
        registry: PendingLoginRegistry | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Application configuration, read once
            session_store: Store for in-flight authorization attempts
            credential_store: Store for provisioned credentials
            adapters: Optional prebuilt adapters (built from config otherwise)
            http_client: Optional HTTP client shared by built adapters
            registry: Optional pending browser login registry
        """
        self._config = config
        self._sessions = session_store
        self._credentials = credential_store
        self._session_ttl = timedelta(seconds=config.session_ttl_seconds)
        self._registry = registry or PendingLoginRegistry(
            ttl=timedelta(seconds=config.web_login_ttl_seconds),
            reap_interval=config.reaper_interval_seconds,
        )
        self._session_retention = max(
            timedelta(seconds=config.session_retention_seconds), self._session_ttl
        )
        self._registry.add_sweep(self._sweep_sessions)
        self._flow_states: dict[Provider, FlowState] = {}

        self._owns_client = False
        if adapters is not None:
            self._adapters = dict(adapters)
            self._http_client = http_client
        else:
            if http_client is None:
                http_client = httpx.AsyncClient(timeout=config.http_timeout_seconds)
                self._owns_client = True
            self._http_client = http_client
            self._adapters = {
                provider: build_adapter(
                    provider,
                    provider_config,
                    http_client,
                    timeout=config.http_timeout_seconds,
                    web_login_ttl=timedelta(seconds=config.web_login_ttl_seconds),
                )
                for provider, provider_config in config.providers.items()
            }

    @property
    def registry(self) -> PendingLoginRegistry:
        return self._registry

    def flow_state(self, provider: Provider | str) -> FlowState:
        """Return the state of the provider's most recent flow."""
        try:
            return self._flow_states.get(_provider(provider), FlowState.IDLE)
        except ConfigMissingError:
            return FlowState.IDLE

    async def __aenter__(self) -> FlowOrchestrator:
        self._registry.start_reaper()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop the reaper, drop pending logins and close HTTP resources."""
        await self._registry.stop_reaper()
        await self._registry.clear()
        for adapter in self._adapters.values():
            await adapter.close()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _adapter(self, provider: Provider, flow: FlowKind) -> Any:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ConfigMissingError(provider.value)
        if adapter.flow != flow:
            raise UnsupportedFlowError(provider.value, flow.value)
        return adapter

    async def _sweep_sessions(self) -> None:
        removed = await self._sessions.cleanup_expired(self._session_retention)
        if removed:
            logger.info("Swept %d abandoned OAuth attempts", removed)

    # Authorization code flow

    async def start(self, provider: Provider | str) -> StartResult:
        """Begin an authorization-code flow.

        Args:
            provider: Provider to authenticate against

        Returns:
            StartResult with the authorization URL, verifier and state
        """
        try:
            resolved = _provider(provider)
            adapter: AuthorizationCodeAdapter = self._adapter(
                resolved, FlowKind.AUTHORIZATION_CODE
            )

            pkce = generate_pkce()
            state = generate_state()
            self._flow_states[resolved] = FlowState.STARTED

            auth_url = adapter.create_authorization_url(state, pkce)

            key = session_key(resolved.value)
            await self._sessions.upsert(
                key,
                AuthAttempt(flow_id=key, verifier=pkce.code_verifier, state=state),
            )
            self._flow_states[resolved] = FlowState.AWAITING_CALLBACK

            logger.info("Started %s OAuth flow", resolved.value)
            return StartResult(
                success=True,
                auth_url=auth_url,
                verifier=pkce.code_verifier,
                state=state,
            )
        except ProvisioningError as e:
            logger.error("Failed to start OAuth flow for %s: %s", provider, e)
            return StartResult.failure(e)
        except Exception:
            logger.exception("Unexpected error starting OAuth flow for %s", provider)
            return StartResult(
                success=False, error="Failed to start OAuth flow", error_kind="UnexpectedError"
            )

    async def complete(self, provider: Provider | str, auth_code: str | None) -> CompleteResult:
        """Finish an authorization-code flow.

        The code may be composite, ``"<code>#<state>"``, in which case the
        part after the first ``#`` is the caller-asserted state. The stored
        attempt is consumed as soon as it is read, so a code is never
        exchanged twice and a failure never leaves a stuck session.

        Args:
            provider: Provider the flow was started for
            auth_code: Authorization code (optionally composite)

        Returns:
            CompleteResult with the provisioned secret and its display name
        """
        resolved: Provider | None = None
        try:
            if not auth_code:
                raise MissingCodeError()

            resolved = _provider(provider)
            adapter: AuthorizationCodeAdapter = self._adapter(
                resolved, FlowKind.AUTHORIZATION_CODE
            )

            code, _, received_state = auth_code.partition("#")

            key = session_key(resolved.value)
            attempt = await self._sessions.get(key)
            if attempt is None:
                raise SessionNotFoundError()
            await self._sessions.delete(key)

            if attempt.is_expired(self._session_ttl):
                self._flow_states[resolved] = FlowState.EXPIRED
                raise SessionExpiredError()

            if received_state and not constant_time_equals(received_state, attempt.state):
                logger.warning("Returned state differs from stored state for %s", resolved.value)

            tokens = await adapter.exchange_code(
                code, attempt.verifier, received_state or attempt.state
            )

            secret = ""
            try:
                if adapter.config.issues_api_key:
                    issued = await adapter.issue_api_key(tokens.access_token)
                    secret = issued.raw_key
                    metadata = CredentialMetadata(
                        provisioning_source=ProvisioningSource.OAUTH,
                        key_id=issued.key_id,
                        key_name=issued.name,
                        created_at=issued.created_at,
                        partial_key_hint=issued.partial_key_hint or secret_hint(secret),
                    )
                else:
                    secret = tokens.access_token
                    metadata = _flow_metadata(resolved, secret)

                await self._credentials.upsert(
                    Credential(provider=resolved.value, secret=secret, metadata=metadata)
                )
            finally:
                # Only the stored secret stays masked
                _release_unkept(secret, tokens.access_token, tokens.refresh_token)
            self._flow_states[resolved] = FlowState.COMPLETED

            logger.info("Provisioned %s credential %s", resolved.value, metadata.key_name)
            return CompleteResult(success=True, api_key=secret, key_name=metadata.key_name)
        except ProvisioningError as e:
            if resolved is not None and self._flow_states.get(resolved) != FlowState.EXPIRED:
                self._flow_states[resolved] = FlowState.FAILED
            logger.error("Failed to complete OAuth flow for %s: %s", provider, e)
            return CompleteResult.failure(e)
        except Exception:
            if resolved is not None:
                self._flow_states[resolved] = FlowState.FAILED
            logger.exception("Unexpected error completing OAuth flow for %s", provider)
            return CompleteResult(
                success=False, error="Failed to complete OAuth flow", error_kind="UnexpectedError"
            )

    async def status(self, provider: Provider | str) -> StatusResult:
        """Report whether a provider holds a usable credential.

        Never returns the secret itself.
        """
        try:
            resolved = _provider(provider)
            credential = await self._credentials.get_by_provider(resolved.value)
            if credential is None or not credential.has_secret:
                return StatusResult(success=True, authenticated=False)

            metadata = credential.metadata
            return StatusResult(
                success=True,
                authenticated=True,
                is_auto_provisioned=metadata is not None and metadata.is_flow_provisioned,
                display_name=metadata.key_name if metadata else None,
                secret_hint=metadata.partial_key_hint if metadata else None,
            )
        except ProvisioningError as e:
            logger.error("Failed to read %s credential status: %s", provider, e)
            return StatusResult.failure(e)
        except Exception:
            logger.exception("Unexpected error checking auth status for %s", provider)
            return StatusResult(
                success=False, error="Failed to check auth status", error_kind="UnexpectedError"
            )

    async def logout(self, provider: Provider | str) -> LogoutResult:
        """Clear a flow-provisioned credential.

        The provider row is kept with an empty secret. Credentials the
        user entered directly are left untouched.
        """
        try:
            resolved = _provider(provider)
            credential = await self._credentials.get_by_provider(resolved.value)

            if (
                credential is not None
                and credential.metadata is not None
                and credential.metadata.is_flow_provisioned
            ):
                await self._credentials.upsert(
                    Credential(provider=resolved.value, secret="", metadata=None)
                )
                unregister_secret(credential.secret)
                self._flow_states[resolved] = FlowState.IDLE
                logger.info("Cleared flow-provisioned %s credential", resolved.value)
            else:
                logger.debug("No flow-provisioned %s credential to clear", resolved.value)

            return LogoutResult(success=True)
        except ProvisioningError as e:
            logger.error("Failed to log out of %s: %s", provider, e)
            return LogoutResult.failure(e)
        except Exception:
            logger.exception("Unexpected error during %s logout", provider)
            return LogoutResult(
                success=False, error="Failed to logout", error_kind="UnexpectedError"
            )

    # Polling login flow

    async def start_web_login(self, provider: Provider | str) -> WebLoginResult:
        """Begin a browser login for a polling-login provider.

        Returns immediately with the URL to open. The credential is stored
        in the background once the login completes.
        """
        try:
            resolved = _provider(provider)
            adapter: PollingLoginAdapter = self._adapter(resolved, FlowKind.POLLING_LOGIN)

            existing = await self._credentials.get_by_provider(resolved.value)
            if existing is not None and existing.has_secret:
                return WebLoginResult(success=True, message="Already authenticated")

            login = await adapter.auth_with_web()
            signal = asyncio.ensure_future(self._finish_web_login(resolved, login))
            await self._registry.register(
                PendingWebLogin(
                    flow_id=login.flow_id,
                    provider=resolved.value,
                    auth_url=login.auth_url,
                    signal=signal,
                )
            )
            self._registry.start_reaper()
            self._flow_states[resolved] = FlowState.AWAITING_CALLBACK

            return WebLoginResult(
                success=True,
                auth_url=login.auth_url,
                flow_id=login.flow_id,
                user_code=login.user_code,
                message="Open the URL in your browser to authenticate",
            )
        except ProvisioningError as e:
            logger.error("Failed to start browser login for %s: %s", provider, e)
            return WebLoginResult.failure(e)
        except Exception:
            logger.exception("Unexpected error starting browser login for %s", provider)
            return WebLoginResult(
                success=False, error="Failed to start browser login", error_kind="UnexpectedError"
            )

    async def wait_for_web_login(
        self, flow_id: str, timeout: float | None = None
    ) -> CompleteResult:
        """Wait for a browser login started with ``start_web_login``.

        Args:
            flow_id: Flow id from WebLoginResult, or the auth URL it returned
            timeout: Optional seconds to wait

        Returns:
            CompleteResult of the login
        """
        try:
            if await self._registry.get(flow_id) is None:
                entry = await self._registry.find_by_auth_url(flow_id)
                if entry is not None:
                    flow_id = entry.flow_id
            result: CompleteResult = await self._registry.wait(flow_id, timeout)
            return result
        except ProvisioningError as e:
            return CompleteResult.failure(e)
        except TimeoutError:
            return CompleteResult(
                success=False,
                error="Timed out waiting for browser login",
                error_kind="TimeoutError",
            )

    async def _finish_web_login(self, provider: Provider, login: WebLogin) -> CompleteResult:
        try:
            tokens = await login.login_complete
            _release_unkept(tokens.access_token, tokens.refresh_token)
            metadata = _flow_metadata(provider, tokens.access_token)
            await self._credentials.upsert(
                Credential(provider=provider.value, secret=tokens.access_token, metadata=metadata)
            )
        except ProvisioningError as e:
            self._flow_states[provider] = FlowState.FAILED
            logger.error(
                "Browser login %s for %s failed: %s", short_id(login.flow_id), provider.value, e
            )
            return CompleteResult.failure(e)
        except asyncio.CancelledError:
            logger.debug("Browser login %s abandoned", short_id(login.flow_id))
            raise
        except Exception:
            self._flow_states[provider] = FlowState.FAILED
            logger.exception("Unexpected error finishing browser login for %s", provider.value)
            return CompleteResult(
                success=False,
                error="Failed to complete browser login",
                error_kind="UnexpectedError",
            )

        self._flow_states[provider] = FlowState.COMPLETED
        logger.info("Provisioned %s credential from browser login", provider.value)
        return CompleteResult(success=True, api_key=tokens.access_token, key_name=metadata.key_name)


def _provider(value: Provider | str) -> Provider:
    try:
        return Provider(value)
    except ValueError:
        raise ConfigMissingError(str(value)) from None


def _release_unkept(kept: str, *secrets: str | None) -> None:
    for secret in secrets:
        if secret != kept:
            unregister_secret(secret)


def _flow_metadata(provider: Provider, secret: str) -> CredentialMetadata:
    """Metadata for a flow-provisioned secret that no issuer described."""
    return CredentialMetadata(
        provisioning_source=ProvisioningSource.OAUTH,
        key_name=provider.value,
        created_at=datetime.now(UTC).isoformat(),
        partial_key_hint=secret_hint(secret),
    )
