"""
FastAPI application factory and HTTP schemas for the email scheduler.

The module exposes a `create_app` function that builds the REST API used to
create campaigns and inspect their delivery, and defines the pydantic payloads
that validate each request.  Authentication is enforced through a configurable
API token carried in the ``X-API-Token`` header; the campaign owner is taken
from the ``X-User-Id`` header set by the upstream identity layer.
"""

import re
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Header, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, field_validator

from .campaigns import CampaignValidationError
from .core import EmailSchedulerCore

API_TOKEN_HEADER_NAME = "X-API-Token"
USER_ID_HEADER_NAME = "X-User-Id"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured on the serving app through :func:`create_app`
    and a request provides either a missing or different value, a ``401`` error
    is raised. When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


async def current_user(user_id: Optional[int] = Header(default=None, alias=USER_ID_HEADER_NAME)) -> int:
    """Return the authenticated owner, ``401`` when the request carries none."""
    if user_id is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Authentication required")
    return user_id


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by the status responses."""
    ok: bool
    error: Optional[str] = None


class CampaignPayload(BaseModel):
    """Campaign request accepted by ``POST /api/campaigns``."""
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)
    recipients: List[str] = Field(min_length=1)
    start_time: datetime
    delay_between_emails_ms: int = Field(ge=0)
    hourly_limit: int = Field(ge=1)

    @field_validator("subject", "body")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("recipients")
    @classmethod
    def _valid_addresses(cls, value: List[str]) -> List[str]:
        cleaned = [address.strip() for address in value]
        invalid = [address for address in cleaned if not EMAIL_PATTERN.match(address)]
        if invalid:
            raise ValueError(f"Each recipient must be a valid email: {', '.join(invalid)}")
        return cleaned


class ScheduledEmailRecord(BaseModel):
    """Scheduled email as returned by the listing endpoints."""
    id: int
    campaign_id: int
    user_id: Optional[int] = None
    recipient_email: str
    subject: str
    body: Optional[str] = None
    scheduled_time: int
    sent_at: Optional[int] = None
    status: str
    job_id: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CampaignRecord(BaseModel):
    """Stored campaign with its counters."""
    id: int
    user_id: int
    subject: str
    body: str
    start_time: int
    delay_between_emails_ms: int
    hourly_limit: int
    status: str
    total_emails: int
    sent_count: int
    failed_count: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    emails: Optional[List[Dict[str, Any]]] = None


class CampaignCreatedResponse(BaseModel):
    message: str
    campaign: CampaignRecord


class CampaignResponse(BaseModel):
    campaign: CampaignRecord


class CampaignsResponse(BaseModel):
    campaigns: List[CampaignRecord]


class EmailsResponse(BaseModel):
    emails: List[ScheduledEmailRecord]


class CampaignStats(BaseModel):
    total: int
    sent: int
    failed: int
    scheduled: int
    queued: int


class StatsResponse(BaseModel):
    stats: CampaignStats


def create_app(
    svc: EmailSchedulerCore | None,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`email_scheduler.core.EmailSchedulerCore` that
        implements the business logic behind each route. Routes answer ``500``
        while it is ``None``.
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
    api = FastAPI(title="Email Scheduler", lifespan=lifespan)
    api.state.api_token = api_token
    router = APIRouter(prefix="/api/campaigns", tags=["campaigns"], dependencies=[auth_dependency])

    def get_service() -> EmailSchedulerCore:
        if svc is None:
            raise HTTPException(500, "Service not initialized")
        return svc

    @api.get("/status", response_model=CommandStatus, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_():
        """Return a simple health status payload."""
        return CommandStatus(ok=True)

    @router.post("", response_model=CampaignCreatedResponse, status_code=status.HTTP_201_CREATED)
    async def create_campaign(payload: CampaignPayload, user_id: int = Depends(current_user)):
        """Schedule one email per recipient and return the stored campaign."""
        try:
            campaign = await get_service().create_campaign(user_id, payload.model_dump())
        except CampaignValidationError as exc:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc)) from exc
        return CampaignCreatedResponse(message="Campaign created successfully", campaign=campaign)

    @router.get("", response_model=CampaignsResponse)
    async def list_campaigns(user_id: int = Depends(current_user)):
        """List the campaigns of the caller, newest first."""
        campaigns = await get_service().list_campaigns(user_id)
        return CampaignsResponse(campaigns=campaigns)

    @router.get("/stats", response_model=StatsResponse)
    async def campaign_stats(user_id: int = Depends(current_user)):
        """Count the emails of the caller by delivery status."""
        stats = await get_service().get_campaign_stats(user_id)
        return StatsResponse(stats=stats)

    @router.get("/emails/scheduled", response_model=EmailsResponse)
    async def scheduled_emails(user_id: int = Depends(current_user)):
        """Emails still waiting for delivery, soonest first."""
        emails = await get_service().list_scheduled_emails(user_id)
        return EmailsResponse(emails=emails)

    @router.get("/emails/sent", response_model=EmailsResponse)
    async def sent_emails(user_id: int = Depends(current_user)):
        """Emails that reached ``sent`` or ``failed``, most recent first."""
        emails = await get_service().list_sent_or_failed_emails(user_id)
        return EmailsResponse(emails=emails)

    @router.get("/{campaign_id}", response_model=CampaignResponse)
    async def get_campaign(campaign_id: int, user_id: int = Depends(current_user)):
        campaign = await get_service().get_campaign(campaign_id, user_id)
        if campaign is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Campaign not found")
        return CampaignResponse(campaign=campaign)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the scheduler."""
        return Response(content=get_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
