"""Provider adapters.

Translate the orchestrator's generic operations into one provider's
wire protocol: authorization-code with PKCE (optionally followed by API
key issuance), or a polling login completed in an external browser.
"""

from __future__ import annotations

import asyncio
from abc import ABC
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from credential_provisioner.config import FlowKind, Provider, ProviderConfig
from credential_provisioner.errors import (
    TIMEOUT_STATUS,
    TRANSPORT_ERROR_STATUS,
    CredentialIssuanceError,
    TokenExchangeError,
)
from credential_provisioner.logging_config import (
    get_logger,
    register_secret,
    unregister_secret,
)
from credential_provisioner.oauth.pkce import PKCEPair, generate_state
from credential_provisioner.security import mask_sensitive_data, short_id

logger = get_logger(__name__)

# Default HTTP timeout for provider requests
DEFAULT_TIMEOUT = 30.0

# Upper bound on how long a polling login may run
DEFAULT_WEB_LOGIN_TTL = timedelta(minutes=5)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

# Added to the polling interval when the provider asks us to slow down
SLOW_DOWN_STEP = 5.0


@dataclass
class TokenSet:
    """OAuth 2.0 token set returned by a token endpoint."""

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: datetime = field(default_factory=lambda: datetime.now(UTC) + timedelta(hours=1))
    token_type: str = "Bearer"
    scope: str | None = None

    def __post_init__(self) -> None:
        register_secret(self.access_token)
        register_secret(self.refresh_token)

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        return datetime.now(UTC) >= self.expires_at

    @classmethod
    def from_token_response(
        cls,
        response: dict[str, Any],
        default_expires_in: int = 3600,
    ) -> TokenSet:
        """Create TokenSet from a token endpoint response.

        Args:
            response: Token endpoint response
            default_expires_in: Default expiry if not in response

        Returns:
            TokenSet instance
        """
        expires_in = response.get("expires_in") or default_expires_in
        expires_at = datetime.now(UTC) + timedelta(seconds=int(expires_in))

        return cls(
            access_token=response["access_token"],
            refresh_token=response.get("refresh_token"),
            expires_at=expires_at,
            token_type=response.get("token_type", "Bearer"),
            scope=response.get("scope"),
        )


@dataclass(frozen=True)
class IssuedApiKey:
    """API key minted from an access token."""

    raw_key: str = field(repr=False)
    key_id: str
    name: str
    created_at: str | None = None
    partial_key_hint: str | None = None
    status: str | None = None

    @classmethod
    def from_response(cls, response: dict[str, Any]) -> IssuedApiKey:
        register_secret(response["raw_key"])
        return cls(
            raw_key=response["raw_key"],
            key_id=str(response.get("id", "")),
            name=str(response.get("name", "")),
            created_at=response.get("created_at"),
            partial_key_hint=response.get("partial_key_hint"),
            status=response.get("status"),
        )


@dataclass
class WebLogin:
    """A polling login in progress.

    Attributes:
        flow_id: Identifier of this login
        auth_url: URL the user opens in a browser
        login_complete: Resolved with the tokens once the user finishes
        user_code: Code the user may be asked to confirm
    """

    flow_id: str
    auth_url: str
    login_complete: asyncio.Future[TokenSet]
    user_code: str | None = None


class ProviderAdapter(ABC):
    """Common HTTP plumbing for provider adapters."""

    flow: FlowKind

    def __init__(
        self,
        provider: Provider,
        config: ProviderConfig,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the adapter.

        Args:
            provider: Provider this adapter speaks for
            config: Provider endpoints and client settings
            http_client: Optional shared HTTP client
            timeout: Timeout for requests made with an owned client
        """
        self.provider = provider
        self.config = config
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _post_json(
        self,
        url: str,
        error_cls: type[TokenExchangeError] | type[CredentialIssuanceError],
        **kwargs: Any,
    ) -> dict[str, Any]:
        """POST and decode a JSON object, mapping every failure to ``error_cls``."""
        client = await self._get_client()

        try:
            response = await client.post(url, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("%s request to %s timed out", self.provider.value, url)
            raise error_cls(TIMEOUT_STATUS, "request timed out") from e
        except httpx.RequestError as e:
            logger.error("%s request to %s failed: %s", self.provider.value, url, e)
            raise error_cls(TRANSPORT_ERROR_STATUS, str(e)) from e

        if not response.is_success:
            logger.error(
                "%s request to %s failed: %s %s",
                self.provider.value,
                url,
                response.status_code,
                response.reason_phrase,
            )
            raise error_cls(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as e:
            raise error_cls(response.status_code, "response is not valid JSON") from e

        if not isinstance(payload, dict):
            raise error_cls(response.status_code, "response is not a JSON object")
        return payload


class AuthorizationCodeAdapter(ProviderAdapter):
    """Authorization Code flow with PKCE.

    The user authorizes in a browser and pastes back (or is redirected
    with) a code, which is exchanged at the token endpoint. Providers
    with an ``api_key_url`` then mint a durable API key from the access
    token.
    """

    flow = FlowKind.AUTHORIZATION_CODE

    def create_authorization_url(self, state: str, pkce: PKCEPair) -> str:
        """Build the browser-facing authorization URL.

        Args:
            state: Anti-forgery state token
            pkce: PKCE pair whose challenge is sent

        Returns:
            Authorization URL
        """
        params = {
            **self.config.extra_authorize_params,
            "client_id": self.config.client_id,
            "response_type": "code",
            "redirect_uri": self.config.redirect_uri,
            "scope": self.config.scope,
            "state": state,
            "code_challenge": pkce.code_challenge,
            "code_challenge_method": "S256",
        }

        separator = "&" if "?" in self.config.authorize_url else "?"
        url = f"{self.config.authorize_url}{separator}{urlencode(params)}"
        logger.debug("Created authorization URL for client %s", self.config.client_id)
        return url

    async def exchange_code(self, code: str, verifier: str, state: str) -> TokenSet:
        """Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback
            verifier: PKCE code verifier from the authorization request
            state: State asserted by the caller, or the stored one

        Returns:
            TokenSet with the access token

        Raises:
            TokenExchangeError: If the exchange fails or times out
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.client_id,
            "code_verifier": verifier,
            "state": state,
        }

        logger.debug("Exchanging authorization code: %s", mask_sensitive_data(payload))

        token_data = await self._post_json(
            self.config.token_url,
            TokenExchangeError,
            json=payload,
            headers={"Accept": "application/json"},
        )
        if not token_data.get("access_token"):
            raise TokenExchangeError(200, "response has no access_token")

        logger.info(
            "Exchanged authorization code for %s tokens (scope: %s)",
            self.provider.value,
            token_data.get("scope", "N/A"),
        )
        return TokenSet.from_token_response(token_data)

    async def issue_api_key(self, access_token: str) -> IssuedApiKey:
        """Mint a durable API key with an access token.

        Args:
            access_token: Access token from the code exchange

        Returns:
            The issued key

        Raises:
            CredentialIssuanceError: If issuance fails or is not configured
        """
        if not self.config.api_key_url:
            raise CredentialIssuanceError(0, "api_key_url is not configured")

        key_data = await self._post_json(
            self.config.api_key_url,
            CredentialIssuanceError,
            json={},
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {access_token}",
            },
        )
        if not key_data.get("raw_key"):
            raise CredentialIssuanceError(200, "response has no raw_key")

        issued = IssuedApiKey.from_response(key_data)
        logger.info(
            "Issued API key %s (%s) for %s", issued.name, issued.key_id, self.provider.value
        )
        return issued


class PollingLoginAdapter(ProviderAdapter):
    """Login completed in an external browser and detected by polling.

    Uses the OAuth device authorization grant: the device endpoint
    returns a verification URL for the user, and the token endpoint is
    polled until the user approves or the login times out.
    """

    flow = FlowKind.POLLING_LOGIN

    def __init__(
        self,
        provider: Provider,
        config: ProviderConfig,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_wait: timedelta = DEFAULT_WEB_LOGIN_TTL,
    ) -> None:
        super().__init__(provider, config, http_client, timeout)
        self._max_wait = max_wait
        self._poll_tasks: set[asyncio.Task[None]] = set()

    async def auth_with_web(self) -> WebLogin:
        """Begin a browser login.

        Returns:
            WebLogin whose ``login_complete`` future resolves with the tokens

        Raises:
            TokenExchangeError: If the device authorization request fails
        """
        data = {"client_id": self.config.client_id}
        if self.config.scope:
            data["scope"] = self.config.scope

        device = await self._post_json(
            self.config.authorize_url,
            TokenExchangeError,
            data=data,
            headers={"Accept": "application/json"},
        )

        device_code = device.get("device_code")
        auth_url = device.get("verification_uri_complete") or device.get("verification_uri")
        if not device_code or not auth_url:
            raise TokenExchangeError(200, "device authorization response is incomplete")
        register_secret(device_code)

        interval = float(device.get("interval") or self.config.poll_interval_seconds)
        wait = self._max_wait
        if device.get("expires_in"):
            wait = min(wait, timedelta(seconds=int(device["expires_in"])))

        login_complete: asyncio.Future[TokenSet] = asyncio.get_running_loop().create_future()
        flow_id = generate_state()

        task = asyncio.create_task(
            self._poll(device_code, interval, datetime.now(UTC) + wait, login_complete)
        )
        self._poll_tasks.add(task)
        task.add_done_callback(self._poll_tasks.discard)
        task.add_done_callback(lambda _: unregister_secret(device_code))

        logger.info("Started %s browser login %s", self.provider.value, short_id(flow_id))
        return WebLogin(
            flow_id=flow_id,
            auth_url=auth_url,
            login_complete=login_complete,
            user_code=device.get("user_code"),
        )

    async def _poll(
        self,
        device_code: str,
        interval: float,
        deadline: datetime,
        login_complete: asyncio.Future[TokenSet],
    ) -> None:
        client = await self._get_client()
        payload = {
            "grant_type": DEVICE_CODE_GRANT,
            "device_code": device_code,
            "client_id": self.config.client_id,
        }

        while not login_complete.done() and datetime.now(UTC) < deadline:
            await asyncio.sleep(interval)
            if login_complete.done():
                return

            try:
                response = await client.post(
                    self.config.token_url,
                    data=payload,
                    headers={"Accept": "application/json"},
                    timeout=self._timeout,
                )
            except httpx.RequestError as e:
                logger.warning("%s login poll failed: %s", self.provider.value, e)
                continue

            if response.is_success:
                try:
                    token_data = response.json()
                    tokens = TokenSet.from_token_response(token_data)
                except (ValueError, KeyError, TypeError):
                    _fail(login_complete, TokenExchangeError(response.status_code, response.text))
                    return
                logger.info("%s browser login completed", self.provider.value)
                _resolve(login_complete, tokens)
                return

            try:
                body = response.json()
            except ValueError:
                body = {}
            error_code = body.get("error") if isinstance(body, dict) else None

            if error_code == "authorization_pending":
                continue
            if error_code == "slow_down":
                interval += SLOW_DOWN_STEP
                continue

            logger.error(
                "%s browser login failed: %s %s",
                self.provider.value,
                response.status_code,
                error_code or response.reason_phrase,
            )
            _fail(login_complete, TokenExchangeError(response.status_code, body or response.text))
            return

        if not login_complete.done():
            _fail(login_complete, TokenExchangeError(TIMEOUT_STATUS, "browser login timed out"))

    async def close(self) -> None:
        """Stop outstanding polls and close the HTTP client if owned."""
        for task in list(self._poll_tasks):
            task.cancel()
        if self._poll_tasks:
            await asyncio.gather(*self._poll_tasks, return_exceptions=True)
        await super().close()


def _resolve(future: asyncio.Future[TokenSet], tokens: TokenSet) -> None:
    """Resolve a login signal once; later resolutions are ignored."""
    if not future.done():
        future.set_result(tokens)


def _fail(future: asyncio.Future[TokenSet], error: Exception) -> None:
    if not future.done():
        future.set_exception(error)


def build_adapter(
    provider: Provider,
    config: ProviderConfig,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    web_login_ttl: timedelta = DEFAULT_WEB_LOGIN_TTL,
) -> ProviderAdapter:
    """Create the adapter matching a provider's flow kind.

    Args:
        provider: Provider to build for
        config: Provider configuration
        http_client: Optional shared HTTP client
        timeout: Request timeout
        web_login_ttl: Upper bound for polling logins

    Returns:
        Configured adapter
    """
    if config.flow == FlowKind.POLLING_LOGIN:
        return PollingLoginAdapter(provider, config, http_client, timeout, web_login_ttl)
    return AuthorizationCodeAdapter(provider, config, http_client, timeout)
