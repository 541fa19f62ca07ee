# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory for the relay status API.

Endpoints:

- ``GET /health``: liveness check, never authenticated.
- ``GET /status``: per-account status snapshots (``?check=true`` adds a
  broker connectivity check).
- ``GET /metrics``: Prometheus metrics.
- ``GET /accounts/{account_id}/queue``: retry queue contents (credentials
  are never returned).
- ``POST /accounts/{account_id}/run-now``: wake an account loop.
- ``POST /accounts/{account_id}/send``: send a message as the account.

When an API token is configured every endpoint except ``/health`` requires
the ``X-API-Token`` header.

Example:
    Serving the API next to the engines::

        service = RelayService(config)
        app = create_app(service, api_token="secret-token")
        uvicorn.run(app, host="127.0.0.1", port=8790)
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional
import logging

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .errors import BrokerError, ConfigError
from .service import RelayService

logger = logging.getLogger(__name__)

service: RelayService | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the
    dependency is bypassed; otherwise a missing or different value is
    answered with ``401``.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    ok: bool
    error: Optional[str] = None


class AccountStatusInfo(BaseModel):
    """Runtime state of one account loop."""
    account_id: str
    mode: str
    running: bool
    last_start_at: Optional[str] = None
    last_stop_at: Optional[str] = None
    last_error: Optional[str] = None
    last_inbound_at: Optional[str] = None
    last_outbound_at: Optional[str] = None
    pending: int = 0
    dead_letter: int = 0
    name: Optional[str] = None
    enabled: bool = True
    configured: bool = False
    connected: bool = False
    issues: List[str] = []
    connectivity: Optional[Dict[str, Any]] = None


class StatusResponse(CommandStatus):
    accounts: List[AccountStatusInfo]


class QueueResponse(CommandStatus):
    account_id: str
    pending: List[Dict[str, Any]]
    dead_letter: List[Dict[str, Any]]


class SendRequest(BaseModel):
    """Outbound message sent as the account."""
    to: str = Field(min_length=1)
    text: Optional[str] = None
    subject: Optional[str] = None
    reply_to_id: Optional[str] = None
    media_url: Optional[str] = None


class SendResponse(CommandStatus):
    account_id: str
    to: str
    message_id: Optional[str] = None


def create_app(
    svc: RelayService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`~tell_relay.service.RelayService` whose engines are
        exposed.
    api_token:
        Optional secret required in the ``X-API-Token`` header.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    api = FastAPI(title="Tell Relay", lifespan=lifespan)
    api.state.api_token = api_token

    def _service() -> RelayService:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    def _engine_or_404(account_id: str):
        try:
            return _service().get_engine(account_id)
        except KeyError:
            raise HTTPException(404, f"Account '{account_id}' not found") from None

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_(check: bool = False):
        """Return the status snapshot of every account loop.

        ``?check=true`` also verifies each account credential against the broker.
        """
        snapshots = await _service().status(check=check)
        return StatusResponse(ok=True, accounts=[AccountStatusInfo.model_validate(item) for item in snapshots])

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the engines."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @api.get(
        "/accounts/{account_id}/queue",
        response_model=QueueResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def account_queue(account_id: str):
        """List pending and dead-lettered retry queue entries."""
        _engine_or_404(account_id)
        contents = await _service().queue_contents(account_id)
        return QueueResponse(ok=True, **contents)

    @api.post(
        "/accounts/{account_id}/run-now",
        response_model=CommandStatus,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def run_now(account_id: str):
        """Wake the account loop so it runs a cycle immediately."""
        engine = _engine_or_404(account_id)
        engine.wake()
        logger.info("Run-now requested for account %s", account_id)
        return CommandStatus(ok=True)

    @api.post(
        "/accounts/{account_id}/send",
        response_model=SendResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def send(account_id: str, payload: SendRequest):
        """Send a message through the broker as the account."""
        try:
            result = await _service().send(
                account_id,
                payload.to,
                payload.text,
                subject=payload.subject,
                reply_to_id=payload.reply_to_id,
                media_url=payload.media_url,
            )
        except ConfigError:
            raise HTTPException(404, f"Account '{account_id}' not found") from None
        except ValueError as exc:
            raise HTTPException(400, str(exc)) from None
        except BrokerError as exc:
            logger.error("Send from account %s failed: %s", account_id, exc)
            raise HTTPException(502, str(exc)) from None
        return SendResponse(ok=True, **result.as_dict())

    return api
