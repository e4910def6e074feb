"""HTTP surface for the flow orchestrator.

Exposes start/complete/status/logout and the browser login endpoints as
JSON routes, so independent request handlers can drive flows
concurrently.
"""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Any

from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route

from credential_provisioner.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from starlette.requests import Request

    from credential_provisioner.config import Config
    from credential_provisioner.oauth.orchestrator import FlowOrchestrator

logger = get_logger(__name__)

# HTTP status for each failure kind; anything else is a 500
ERROR_STATUS = {
    "MissingCodeError": 400,
    "UnsupportedFlowError": 400,
    "ConfigMissingError": 404,
    "SessionNotFoundError": 404,
    "SessionExpiredError": 410,
    "TokenExchangeError": 502,
    "CredentialIssuanceError": 502,
    "CredentialMetadataError": 409,
    "TimeoutError": 504,
}


def _respond(result: Any) -> JSONResponse:
    status_code = 200 if result.success else ERROR_STATUS.get(result.error_kind, 500)
    return JSONResponse(result.to_dict(), status_code=status_code)


def create_http_app(config: Config, orchestrator: FlowOrchestrator) -> Starlette:
    """Create the Starlette application.

    The orchestrator's reaper runs for the lifetime of the app and its
    HTTP resources are released on shutdown.

    Args:
        config: Application configuration
        orchestrator: Orchestrator serving the routes

    Returns:
        Configured Starlette application
    """

    async def health_check(request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "app_name": config.app_name,
            "environment": config.environment.value,
            "providers": sorted(p.value for p in config.providers),
        })

    async def start(request: Request) -> JSONResponse:
        return _respond(await orchestrator.start(request.path_params["provider"]))

    async def complete(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            body = {}
        code = body.get("code") if isinstance(body, dict) else None
        return _respond(await orchestrator.complete(request.path_params["provider"], code))

    async def callback(request: Request) -> JSONResponse:
        """Redirect target for providers that send the code back to us."""
        error = request.query_params.get("error")
        if error:
            description = request.query_params.get("error_description", "Unknown error")
            logger.error("OAuth error from provider: %s - %s", error, description)
            return JSONResponse({"error": error, "description": description}, status_code=400)

        code = request.query_params.get("code", "")
        state = request.query_params.get("state")
        auth_code = f"{code}#{state}" if code and state else code
        return _respond(await orchestrator.complete(request.path_params["provider"], auth_code))

    async def status(request: Request) -> JSONResponse:
        return _respond(await orchestrator.status(request.path_params["provider"]))

    async def logout(request: Request) -> JSONResponse:
        return _respond(await orchestrator.logout(request.path_params["provider"]))

    async def web_login(request: Request) -> JSONResponse:
        return _respond(await orchestrator.start_web_login(request.path_params["provider"]))

    async def web_login_result(request: Request) -> JSONResponse:
        flow_id = request.path_params.get("flow_id") or request.query_params.get("auth_url")
        if not flow_id:
            return JSONResponse({"error": "auth_url is required"}, status_code=400)
        raw_timeout = request.query_params.get("timeout")
        try:
            timeout = float(raw_timeout) if raw_timeout else None
        except ValueError:
            return JSONResponse({"error": "timeout must be a number"}, status_code=400)
        return _respond(await orchestrator.wait_for_web_login(flow_id, timeout))

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        orchestrator.registry.start_reaper()
        logger.info("Credential provisioner HTTP surface ready")
        try:
            yield
        finally:
            await orchestrator.aclose()

    routes = [
        Route("/health", health_check, methods=["GET"]),
        Route("/oauth/web-login", web_login_result, methods=["GET"]),
        Route("/oauth/web-login/{flow_id}", web_login_result, methods=["GET"]),
        Route("/oauth/{provider}/start", start, methods=["POST"]),
        Route("/oauth/{provider}/complete", complete, methods=["POST"]),
        Route("/oauth/{provider}/callback", callback, methods=["GET"]),
        Route("/oauth/{provider}/status", status, methods=["GET"]),
        Route("/oauth/{provider}/logout", logout, methods=["POST"]),
        Route("/oauth/{provider}/web-login", web_login, methods=["POST"]),
    ]

    return Starlette(routes=routes, lifespan=lifespan)


async def run_http(app: Starlette, host: str, port: int) -> None:
    """Serve the application with uvicorn.

    Args:
        app: Starlette ASGI application
        host: Host to bind to
        port: Port to bind to
    """
    import uvicorn

    logger.info("Starting credential provisioner on %s:%d", host, port)

    server = uvicorn.Server(uvicorn.Config(app=app, host=host, port=port, log_level="info"))
    await server.serve()
