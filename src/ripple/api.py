"""FastAPI application for ripple.

REST endpoints cover history, the admin surface for users, room management
and receipts. Real-time traffic goes over the WebSocket at ``/ws``.

Callers authenticate with ``Authorization: Bearer <token>`` (the WebSocket
also accepts ``?token=``); admin endpoints take ``X-Admin-Token``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request, WebSocket
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketDisconnect

from ._version import __version__
from .auth import verify_admin_token
from .auth_provider import extract_bearer_token
from .errors import (
    BusUnavailable,
    Conflict,
    InvalidCredential,
    NotFound,
    PersistenceError,
    RippleError,
    Unauthorized,
    ValidationError,
)
from .hub import ChatHub
from .metrics import metrics
from .models import Message
from .options import RippleOptions, configure_logging

logger = logging.getLogger(__name__)

# Most specific class first
ERROR_STATUS: list[tuple[type[RippleError], int]] = [
    (InvalidCredential, 401),
    (Unauthorized, 403),
    (ValidationError, 400),
    (NotFound, 404),
    (Conflict, 409),
    (PersistenceError, 503),
    (BusUnavailable, 503),
]


def status_for(error: RippleError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(error, cls):
            return status
    return 500


# --- Request/Response Models ---


class CreateUserRequest(BaseModel):
    display_name: str | None = None
    metadata: dict[str, Any] | None = None


class CreateUserResponse(BaseModel):
    user_id: str
    token: str
    display_name: str | None
    metadata: dict[str, Any]
    created_at: str


class CreateRoomRequest(BaseModel):
    display_name: str | None = None
    is_private: bool = False


class RoomInfo(BaseModel):
    room_id: str
    display_name: str | None = None
    is_private: bool
    created_by: str | None = None
    created_at: str | None = None


class RoomWithRoleInfo(RoomInfo):
    role: str
    joined_at: str | None = None


class AddMemberRequest(BaseModel):
    user_id: str
    role: str = "member"


class MemberInfo(BaseModel):
    room_id: str
    user_id: str
    role: str
    joined_at: str | None = None


class SendMessageRequest(BaseModel):
    content: str = ""
    attachments: list[str] = Field(default_factory=list)
    temp_id: str | None = None


class MessageInfo(BaseModel):
    mid: str
    room_id: str
    sender_id: str
    seq: int
    content: str
    attachments: list[str]
    created_at: str | None
    edited_at: str | None = None
    deleted_at: str | None = None
    deleted: bool = False

    @classmethod
    def from_message(cls, message: Message) -> "MessageInfo":
        return cls(**message.to_dict())


class SubmitResponse(BaseModel):
    message: MessageInfo
    temp_id: str | None = None


class DeliveryRecordInfo(BaseModel):
    mid: str
    recipient_id: str
    delivered_at: str | None = None
    read_at: str | None = None


class ReceiptsResponse(BaseModel):
    mid: str
    receipts: dict[str, DeliveryRecordInfo]


class PresenceInfo(BaseModel):
    user_id: str
    online: bool
    connections: int


# --- Auth Helpers ---


def get_hub(request: Request) -> ChatHub:
    return request.app.state.hub


def require_admin(request: Request, x_admin_token: str | None) -> None:
    """Verify the static admin token."""
    expected = get_hub(request).options.admin_token
    if not expected:
        raise HTTPException(500, "No admin token configured. Set RIPPLE_ADMIN_TOKEN")
    if not x_admin_token:
        raise HTTPException(401, "X-Admin-Token header required")
    if not verify_admin_token(x_admin_token, expected):
        raise HTTPException(403, "Invalid admin token")


async def require_user(request: Request, authorization: str | None) -> str:
    """Resolve the calling user from a bearer token. Returns the user ID."""
    token = extract_bearer_token(authorization)
    if not token:
        raise HTTPException(401, "Authorization: Bearer <token> header required")
    return await get_hub(request).validator.validate(token)


# --- Routes ---

router = APIRouter()


@router.post("/admin/users", response_model=CreateUserResponse)
async def create_user(
    request: Request,
    body: CreateUserRequest | None = None,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Create a user and return its token. The token is shown only once."""
    require_admin(request, x_admin_token)
    body = body or CreateUserRequest()
    user = await get_hub(request).store.create_user(body.display_name, body.metadata)
    return CreateUserResponse(**user)


@router.post("/rooms", response_model=RoomInfo)
async def create_room(
    request: Request,
    body: CreateRoomRequest | None = None,
    authorization: Annotated[str | None, Header()] = None,
):
    """Create a room. The caller becomes its owner."""
    user_id = await require_user(request, authorization)
    body = body or CreateRoomRequest()
    room = await get_hub(request).membership.create_room(
        user_id, display_name=body.display_name, is_private=body.is_private
    )
    return RoomInfo(**room.to_dict())


@router.get("/rooms", response_model=list[RoomWithRoleInfo])
async def list_my_rooms(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """List rooms the caller is a member of, with their role."""
    user_id = await require_user(request, authorization)
    rooms = await get_hub(request).membership.rooms_for_user(user_id)
    return [RoomWithRoleInfo(**r) for r in rooms]


@router.get("/rooms/{room_id}", response_model=RoomInfo)
async def get_room(
    request: Request,
    room_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    """Get room details. Requires membership."""
    user_id = await require_user(request, authorization)
    membership = get_hub(request).membership
    await membership.require_member(room_id, user_id)
    room = await membership.get_room(room_id)
    return RoomInfo(**room.to_dict())


@router.get("/rooms/{room_id}/members", response_model=list[MemberInfo])
async def list_room_members(
    request: Request,
    room_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    """List room members in join order. Requires membership."""
    user_id = await require_user(request, authorization)
    membership = get_hub(request).membership
    await membership.require_member(room_id, user_id)
    return [MemberInfo(**m.to_dict()) for m in await membership.members(room_id)]


@router.post("/rooms/{room_id}/members", response_model=MemberInfo)
async def add_room_member(
    request: Request,
    room_id: str,
    body: AddMemberRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    """Add a user to a room. Private rooms need an owner or admin."""
    actor_id = await require_user(request, authorization)
    member = await get_hub(request).membership.add_member(
        room_id, body.user_id, role=body.role, actor_id=actor_id
    )
    return MemberInfo(**member.to_dict())


@router.delete("/rooms/{room_id}/members/{user_id}")
async def remove_room_member(
    request: Request,
    room_id: str,
    user_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    """Remove a member. Members may remove themselves.

    The removed user's live connections stop receiving the room at once.
    """
    actor_id = await require_user(request, authorization)
    await get_hub(request).registry.remove_member(room_id, user_id, actor_id=actor_id)
    return {"ok": True}


@router.get("/rooms/{room_id}/messages", response_model=list[MessageInfo])
async def get_room_messages(
    request: Request,
    room_id: str,
    before: int | None = Query(None, ge=0),
    after: int | None = Query(None, ge=0),
    limit: int = Query(50, ge=1),
    authorization: Annotated[str | None, Header()] = None,
):
    """Page through a room's history by order key.

    ``before`` returns the newest page below a seq; ``after`` returns the
    oldest page above one (catch-up after reconnect). Pages are ascending.
    """
    user_id = await require_user(request, authorization)
    messages = await get_hub(request).pipeline.history(
        room_id, user_id, before=before, after=after, limit=limit
    )
    return [MessageInfo.from_message(m) for m in messages]


@router.post("/rooms/{room_id}/messages", response_model=SubmitResponse)
async def send_room_message(
    request: Request,
    room_id: str,
    body: SendMessageRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    """Send a message to a room. Requires membership."""
    user_id = await require_user(request, authorization)
    result = await get_hub(request).pipeline.submit(
        room_id,
        user_id,
        body.content,
        attachments=body.attachments,
        client_temp_id=body.temp_id,
    )
    return SubmitResponse(
        message=MessageInfo.from_message(result.message), temp_id=result.client_temp_id
    )


@router.get("/messages/{mid}/receipts", response_model=ReceiptsResponse)
async def get_receipts(
    request: Request,
    mid: str,
    authorization: Annotated[str | None, Header()] = None,
):
    """Delivery and read state of a message. Requires membership of its room."""
    user_id = await require_user(request, authorization)
    hub = get_hub(request)
    message = await hub.store.get_message(mid)
    if message is None:
        raise NotFound(f"Message {mid} not found")
    await hub.membership.require_member(message.room_id, user_id)
    snapshot = await hub.tracker.snapshot(mid)
    return ReceiptsResponse(
        mid=mid,
        receipts={rid: DeliveryRecordInfo(**record.to_dict()) for rid, record in snapshot.items()},
    )


@router.get("/users/{user_id}/presence", response_model=PresenceInfo)
async def get_presence(
    request: Request,
    user_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    """Presence of a user as seen by this process."""
    await require_user(request, authorization)
    registry = get_hub(request).registry
    return PresenceInfo(
        user_id=user_id,
        online=registry.is_online(user_id),
        connections=len(registry.connections_for(user_id)),
    )


@router.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/metrics")
def get_metrics(
    request: Request,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Get application metrics. Requires admin authentication."""
    require_admin(request, x_admin_token)
    hub = get_hub(request)
    data = metrics.to_dict()
    data["connections"] = hub.registry.connection_count()
    data["online_users"] = len(hub.registry.online_users())
    return data


# --- WebSocket ---


class WebSocketTransport:
    """Gateway transport over a Starlette WebSocket.

    Frames may be sent from several tasks at once (replies and forwarded
    events), so sends are serialized.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()

    async def send(self, data: str) -> None:
        async with self._send_lock:
            await self.websocket.send_text(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code=code, reason=reason)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str | None = Query(None)):
    """Real-time session. Frames are handled one at a time, in arrival order."""
    hub: ChatHub = websocket.app.state.hub
    token = token or extract_bearer_token(websocket.headers.get("authorization"))

    await websocket.accept()
    try:
        conn = await hub.gateway.open(WebSocketTransport(websocket), token)
    except InvalidCredential:
        return

    try:
        while True:
            raw = await websocket.receive_text()
            await hub.gateway.handle_frame(conn.connection_id, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.gateway.close(conn.connection_id)


# --- Application ---


def create_app(options: RippleOptions | None = None) -> FastAPI:
    """Build the application. Options default to the RIPPLE_* environment."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        opts = options or RippleOptions.from_env()
        configure_logging(opts.log_level)
        app.state.hub = ChatHub.from_options(opts)
        yield
        await app.state.hub.close()

    app = FastAPI(
        title="ripple",
        description="Real-time message fan-out and delivery tracking",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(RippleError)
    async def ripple_error_handler(request: Request, exc: RippleError):
        if isinstance(exc, (PersistenceError, BusUnavailable)):
            logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=status_for(exc),
            content={"detail": exc.message, "code": exc.code},
        )

    @app.middleware("http")
    async def add_timing_middleware(request: Request, call_next):
        """Middleware to track request timing for metrics."""
        start_time = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000

        # Aggregate by route template rather than concrete IDs
        route = request.scope.get("route")
        endpoint = f"{request.method} {getattr(route, 'path', 'other')}"
        metrics.record_request(endpoint, duration_ms)

        response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"
        return response

    app.include_router(router)
    return app


app = create_app()
