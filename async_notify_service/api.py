"""
FastAPI application factory and HTTP schemas for the async notify service.

The module exposes a `create_app` function that builds the REST API used to
control the dispatcher, publish notifications and administer live push
sessions, plus the ``/ws`` websocket endpoint served by the push gateway.
HTTP routes are protected by a configurable API token carried in the
``X-API-Token`` header; websocket clients authenticate with their own bearer
credential instead.
"""

from typing import Optional, Dict, Any, List, Literal, Union, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Request, WebSocket, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, model_validator

from .service import NotifyService

service: NotifyService | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

PriorityLabel = Literal["urgent", "high", "normal", "low"]


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


def get_service() -> NotifyService:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class CountResponse(CommandStatus):
    count: int


class RunNowResponse(CommandStatus):
    processed: int


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    sent: int = 0
    failed: int = 0
    total: int = 0


class QueueStatsResponse(CommandStatus, QueueStats):
    pass


class PushStats(BaseModel):
    online_users: int
    connections: int
    rooms: List[str] = Field(default_factory=list)


class StatusResponse(CommandStatus):
    processing: bool
    queue: QueueStats
    push: PushStats


class MessagePayload(BaseModel):
    """Mail accepted by ``POST /messages``; either ``content`` or ``template_id`` is required."""
    to: str
    subject: str
    content: Optional[str] = None
    template_id: Optional[str] = None
    template_data: Optional[Dict[str, Any]] = None
    priority: Optional[Union[int, PriorityLabel]] = None
    scheduled_at: Optional[int] = None
    max_retries: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _require_body(self):
        if self.content is None and not self.template_id:
            raise ValueError("either content or template_id is required")
        return self


class EnqueueResponse(CommandStatus):
    id: str


class MessageRecord(BaseModel):
    """Queued message as returned by ``GET /messages``."""
    id: str
    to: str
    subject: str
    content: str = ""
    template_id: Optional[str] = None
    template_data: Dict[str, Any] = Field(default_factory=dict)
    priority: str
    scheduled_at: int
    status: str
    retry_count: int
    max_retries: int
    last_error: Optional[str] = None
    sent_at: Optional[int] = None
    created_at: Optional[str] = None


class MessagesResponse(CommandStatus):
    messages: List[MessageRecord]


class RetryFailedPayload(BaseModel):
    ids: Optional[List[str]] = None


class CleanupSentPayload(BaseModel):
    older_than_days: Optional[int] = Field(default=None, ge=0)


class NotificationPayload(BaseModel):
    """Event for one or more users, routed through the orchestrator."""
    user_id: Optional[str] = None
    user_ids: Optional[List[str]] = None
    type: Literal["message", "announcement", "system"] = "message"
    title: str
    content: str
    priority: Optional[PriorityLabel] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _require_target(self):
        if not self.user_id and not self.user_ids:
            raise ValueError("user_id or user_ids is required")
        return self


class AnnouncementPayload(BaseModel):
    title: str
    content: str
    priority: Optional[PriorityLabel] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None


class NotificationsResponse(CommandStatus):
    notifications: List[Dict[str, Any]]


class NotificationResponse(CommandStatus):
    notification: Dict[str, Any]


class TemplatePayload(BaseModel):
    id: str
    name: str
    subject: str
    body: str
    is_active: bool = True


class UserPayload(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None


class OnlineUsersResponse(CommandStatus):
    count: int
    user_ids: List[str]


class MaintenancePayload(BaseModel):
    message: str
    disconnect_after: bool = False


def create_app(
    svc: NotifyService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        :class:`async_notify_service.service.NotifyService` bundling the
        dispatcher, the push gateway and the orchestrator.
    api_token:
        Optional secret used to protect every HTTP endpoint. When provided,
        the ``X-API-Token`` header must match this value on every request.
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

    api = FastAPI(title="Async Notify Service", lifespan=lifespan)
    api.state.api_token = api_token
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    push = APIRouter(prefix="/push", tags=["push"], dependencies=[auth_dependency])

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_view():
        """Return queue counters and live connection figures."""
        info = await get_service().status()
        return StatusResponse(ok=True, **info)

    @commands.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now():
        """Run one dispatch cycle immediately."""
        processed = await get_service().dispatcher.process_queue()
        return RunNowResponse(ok=True, processed=processed)

    @commands.post("/retry-failed", response_model=CountResponse, response_model_exclude_none=True)
    async def retry_failed(payload: RetryFailedPayload | None = None):
        """Return failed messages (all, or the listed ids) to the queue."""
        ids = payload.ids if payload else None
        count = await get_service().dispatcher.retry_failed(ids)
        return CountResponse(ok=True, count=count)

    @commands.post("/cleanup-sent", response_model=CountResponse, response_model_exclude_none=True)
    async def cleanup_sent(payload: CleanupSentPayload | None = None):
        """Delete sent messages older than the retention window."""
        days = payload.older_than_days if payload else None
        count = await get_service().dispatcher.cleanup_sent(days)
        return CountResponse(ok=True, count=count)

    @api.post("/messages", response_model=EnqueueResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def enqueue_message(payload: MessagePayload):
        """Queue one outbound mail."""
        try:
            msg_id = await get_service().dispatcher.enqueue(**payload.model_dump())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return EnqueueResponse(ok=True, id=msg_id)

    @api.get("/messages", response_model=MessagesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_messages(status: Optional[Literal["pending", "processing", "sent", "failed"]] = None):
        """Expose the queue, optionally filtered by status."""
        messages = await get_service().dispatcher.list_messages(status)
        return MessagesResponse(ok=True, messages=messages)

    @api.get("/queue/stats", response_model=QueueStatsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def queue_stats():
        stats = await get_service().dispatcher.get_queue_stats()
        return QueueStatsResponse(ok=True, **stats)

    @api.post("/notifications", response_model=NotificationsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def notify(payload: NotificationPayload):
        """Persist and deliver a notification to one or more users."""
        user_ids = list(payload.user_ids or [])
        if payload.user_id and payload.user_id not in user_ids:
            user_ids.insert(0, payload.user_id)
        events = await get_service().orchestrator.notify_users(
            user_ids,
            payload.type,
            payload.title,
            payload.content,
            priority=payload.priority,
            sender_id=payload.sender_id,
            sender_name=payload.sender_name,
            data=payload.data,
        )
        return NotificationsResponse(ok=True, notifications=[event.to_payload() for event in events])

    @api.post("/announcements", response_model=NotificationResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def announce(payload: AnnouncementPayload):
        """Broadcast an announcement to every connected session."""
        event = await get_service().orchestrator.publish_announcement(
            payload.title,
            payload.content,
            sender_id=payload.sender_id,
            sender_name=payload.sender_name,
            priority=payload.priority,
        )
        return NotificationResponse(ok=True, notification=event.to_payload())

    @api.post("/templates", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_template(payload: TemplatePayload):
        """Register or replace a mail template."""
        await get_service().persistence.add_template(payload.model_dump())
        return BasicOkResponse(ok=True)

    @api.put("/users/{user_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def upsert_user(user_id: str, payload: UserPayload):
        """Store the contact address used for mail copies of urgent events."""
        await get_service().persistence.upsert_user({"id": user_id, **payload.model_dump()})
        return BasicOkResponse(ok=True)

    @push.get("/online", response_model=OnlineUsersResponse, response_model_exclude_none=True)
    async def online_users():
        gateway = get_service().gateway
        return OnlineUsersResponse(ok=True, count=gateway.online_user_count(), user_ids=gateway.get_online_user_ids())

    @push.post("/disconnect/{user_id}", response_model=CountResponse, response_model_exclude_none=True)
    async def disconnect_user(user_id: str):
        """Terminate every live session of a user."""
        count = await get_service().gateway.disconnect_user(user_id)
        return CountResponse(ok=True, count=count)

    @push.post("/maintenance", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def maintenance(payload: MaintenancePayload):
        """Warn connected clients and optionally disconnect them after the grace delay."""
        await get_service().gateway.send_maintenance_notification(payload.message, payload.disconnect_after)
        return BasicOkResponse(ok=True)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the service."""
        return Response(content=get_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @api.websocket("/ws")
    async def push_socket(websocket: WebSocket):
        if not service:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return
        await service.gateway.serve(websocket)

    api.include_router(commands)
    api.include_router(push)
    return api
