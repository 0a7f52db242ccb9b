"""
FastAPI application factory and HTTP schemas for the async reply service.

The module exposes a `create_app` function that builds the REST API used to
inspect tenants, trigger polls and send operator replies. Authentication is
enforced through a configurable API token carried in the ``X-API-Token``
header.
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import AsyncReplyCore

app = FastAPI(title="Async Reply Service")
service: AsyncReplyCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class PollSummary(BaseModel):
    """Outcome of the last poll of a tenant."""
    ok: bool
    started_at: Optional[str] = None
    emails_checked: Optional[int] = None
    replies_added: Optional[int] = None
    errors: Optional[List[str]] = None
    marked_read: Optional[List[str]] = None
    error: Optional[str] = None


class TenantInfo(BaseModel):
    """Tenant as returned by ``listTenants``."""
    id: str
    site_name: Optional[str] = None
    directory: Optional[str] = None
    imap_configured: bool
    smtp_configured: bool
    last_poll: Optional[PollSummary] = None


class TenantsResponse(CommandStatus):
    tenants: List[TenantInfo] = Field(default_factory=list)


class PollTenantPayload(BaseModel):
    tenant_id: str


class PollTenantResponse(CommandStatus):
    """Result of an on-demand poll."""
    tenant_id: Optional[str] = None
    emails_checked: int = 0
    replies_added: int = 0
    errors: List[str] = Field(default_factory=list)
    marked_read: List[str] = Field(default_factory=list)


class OriginalEmailPayload(BaseModel):
    """Threading headers of the customer email being answered."""
    sender: Optional[str] = None
    subject: Optional[str] = None
    message_id: str
    references: Optional[str] = None


class SendReplyPayload(BaseModel):
    """Payload accepted by the ``sendReply`` command."""
    tenant_id: str
    conversation_id: int
    text: str
    html_text: Optional[str] = None
    original: Optional[OriginalEmailPayload] = None


class SendReplyResponse(CommandStatus):
    message_id: Optional[str] = None


def create_app(
    svc: AsyncReplyCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_reply_service.core.AsyncReplyCore` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    # Use custom lifespan if provided, otherwise use the global app
    if lifespan is not None:
        api = FastAPI(title="Async Reply Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    def _service() -> AsyncReplyCore:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @api.get("/tenants", response_model=TenantsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_tenants():
        """List configured tenants with the outcome of their last poll."""
        result = await _service().handle_command("listTenants", {})
        return TenantsResponse.model_validate(result)

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Start the next polling cycle immediately."""
        result = await _service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        """Stop periodic polling."""
        result = await _service().handle_command("suspend", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        """Resume periodic polling."""
        result = await _service().handle_command("activate", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/poll-tenant", response_model=PollTenantResponse, response_model_exclude_none=True)
    async def poll_tenant(payload: PollTenantPayload):
        """Poll one tenant mailbox now and return the summary."""
        result = await _service().handle_command("pollTenant", payload.model_dump())
        if result.get("ok") is not True:
            raise HTTPException(status_code=400, detail={"error": result.get("error")})
        return PollTenantResponse.model_validate(result)

    @router.post("/send-reply", response_model=SendReplyResponse, response_model_exclude_none=True)
    async def send_reply(payload: SendReplyPayload):
        """Email an operator reply and record it on the conversation."""
        data: Dict[str, Any] = payload.model_dump(exclude_none=True)
        result = await _service().handle_command("sendReply", data)
        if result.get("ok") is not True:
            raise HTTPException(status_code=400, detail={"error": result.get("error")})
        return SendReplyResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the service."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
