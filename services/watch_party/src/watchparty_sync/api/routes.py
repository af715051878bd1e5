"""HTTP and WebSocket routes of the watch party sync service."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, WebSocket, status
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketDisconnect
from jsonschema import ValidationError

from ..config import HealthPayload, Settings, get_settings
from ..errors import InvalidEntry, InvalidTransition, NotMember, PartyNotFound, StateConflict, WatchPartyError
from ..hub import CLOSE_FORBIDDEN, CLOSE_TRY_AGAIN, BroadcastHub, ChannelLimitError, ConnectionLimitError
from ..models import (
    ConflictPayload,
    LogEntry,
    LogGroup,
    MessageRequest,
    Party,
    PartyCreateRequest,
    PlaybackState,
    PlaybackUpdate,
)
from ..rate_limit import rate_limit
from ..schemas import validate_client_frame
from ..sequencer import PartySequencer

logger = logging.getLogger(__name__)
router = APIRouter()

CLOSE_UNSUPPORTED = 1003
CLOSE_UNAUTHORIZED = 4401
CLOSE_NOT_FOUND = 4404


def _sequencer_from_app(app) -> PartySequencer:  # type: ignore[no-untyped-def]
    sequencer = getattr(app.state, "sequencer", None)
    if sequencer is None:
        raise RuntimeError("PartySequencer is not initialised")
    return sequencer


def get_sequencer(request: Request) -> PartySequencer:
    """Fetch the party sequencer from HTTP request context."""

    return _sequencer_from_app(request.app)


def get_hub(request: Request) -> BroadcastHub:
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise RuntimeError("BroadcastHub is not initialised")
    return hub


def current_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Caller identity; authentication happens upstream of this service."""

    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required")
    return x_user_id


SequencerDep = Annotated[PartySequencer, Depends(get_sequencer)]
UserDep = Annotated[str, Depends(current_user_id)]


def _http_error(exc: WatchPartyError) -> HTTPException:
    if isinstance(exc, PartyNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, NotMember):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, InvalidEntry):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


async def _authorize(websocket: WebSocket) -> None:
    settings = get_settings()
    if not settings.ws_api_key:
        return
    auth_header = websocket.headers.get("authorization") or ""
    token = auth_header.split(" ")[-1] if auth_header.lower().startswith("bearer ") else websocket.query_params.get("token")
    if token != settings.ws_api_key:
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Unauthorized")
        raise WebSocketDisconnect(code=CLOSE_UNAUTHORIZED)


@router.get("/health", response_model=HealthPayload, tags=["system"])
async def read_health(settings: Annotated[Settings, Depends(get_settings)]) -> HealthPayload:
    """Return service health information."""

    return HealthPayload(status="ok", api_version=settings.api_version)


@router.post("/parties", response_model=Party, status_code=status.HTTP_201_CREATED, tags=["parties"])
async def create_party(body: PartyCreateRequest, sequencer: SequencerDep) -> Party:
    return await sequencer.create_party(body.id, body.members)


@router.get("/parties/{party_id}", response_model=Party, tags=["parties"])
async def read_party(party_id: str, sequencer: SequencerDep) -> Party:
    try:
        return await sequencer.get_party(party_id)
    except WatchPartyError as exc:
        raise _http_error(exc) from exc


@router.delete("/parties/{party_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["parties"])
async def archive_party(party_id: str, sequencer: SequencerDep) -> Response:
    try:
        await sequencer.archive_party(party_id)
    except WatchPartyError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/parties/{party_id}/members", response_model=Party, tags=["parties"])
async def join_party(party_id: str, sequencer: SequencerDep, user_id: UserDep) -> Party:
    try:
        return await sequencer.join(party_id, user_id)
    except WatchPartyError as exc:
        raise _http_error(exc) from exc


@router.delete("/parties/{party_id}/members/me", response_model=Party, tags=["parties"])
async def leave_party(party_id: str, sequencer: SequencerDep, user_id: UserDep) -> Party:
    try:
        return await sequencer.leave(party_id, user_id)
    except WatchPartyError as exc:
        raise _http_error(exc) from exc


@router.get("/parties/{party_id}/logs", response_model=list[LogEntry], tags=["logs"])
async def read_logs(
    party_id: str,
    sequencer: SequencerDep,
    cursor: Annotated[int, Query(ge=0, description="Return entries with seq greater than this.")] = 0,
) -> list[LogEntry]:
    try:
        return await sequencer.list_logs(party_id, cursor)
    except WatchPartyError as exc:
        raise _http_error(exc) from exc


@router.get("/parties/{party_id}/logs/grouped", response_model=list[LogGroup], tags=["logs"])
async def read_grouped_logs(party_id: str, sequencer: SequencerDep) -> list[LogGroup]:
    try:
        return await sequencer.grouped_logs(party_id)
    except WatchPartyError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/parties/{party_id}/logs/message",
    response_model=LogEntry,
    status_code=status.HTTP_201_CREATED,
    tags=["logs"],
)
async def post_message(
    party_id: str,
    body: MessageRequest,
    response: Response,
    sequencer: SequencerDep,
    user_id: UserDep,
    _rl: None = Depends(rate_limit),
) -> LogEntry:
    """Accept a chat message; a replayed id echoes the stored entry with 200."""

    try:
        result = await sequencer.post_message(party_id, body.id, body.text, user_id)
    except WatchPartyError as exc:
        raise _http_error(exc) from exc
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return result.entry


@router.patch(
    "/parties/{party_id}/state",
    response_model=PlaybackState,
    responses={status.HTTP_409_CONFLICT: {"model": ConflictPayload}},
    tags=["state"],
)
async def update_state(
    party_id: str,
    body: PlaybackUpdate,
    sequencer: SequencerDep,
    user_id: UserDep,
) -> PlaybackState | JSONResponse:
    """Apply a member's playback change; a stale version answers 409 with the current state."""

    try:
        return await sequencer.update_state(
            party_id,
            is_playing=body.is_playing,
            current_time=body.current_time,
            expected_version=body.expected_version,
            actor_user_id=user_id,
        )
    except StateConflict as exc:
        payload = ConflictPayload(detail=str(exc), state=exc.current)
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=payload.model_dump(mode="json"))
    except WatchPartyError as exc:
        raise _http_error(exc) from exc


@router.get("/parties/{party_id}/presence", tags=["parties"])
async def read_presence(party_id: str, sequencer: SequencerDep, request: Request) -> dict[str, object]:
    try:
        await sequencer.get_party(party_id)
    except WatchPartyError as exc:
        raise _http_error(exc) from exc
    return {"partyId": party_id, "subscribers": get_hub(request).presence.snapshot(party_id)}


@router.websocket("/ws/parties/{party_id}")
async def party_ws(
    websocket: WebSocket,
    party_id: str,
    user_id: Annotated[str, Query(alias="userId", min_length=1)],
    cursor: Annotated[int, Query(ge=0)] = 0,
) -> None:
    """Push channel: current state, then the log after ``cursor``, then live events."""

    try:
        await _authorize(websocket)
    except WebSocketDisconnect:
        return
    sequencer = _sequencer_from_app(websocket.app)
    presence = websocket.app.state.hub.presence
    await websocket.accept()
    try:
        subscription = await sequencer.connect(party_id, websocket, user_id, cursor=cursor)
    except PartyNotFound:
        await websocket.close(code=CLOSE_NOT_FOUND, reason="Party not found")
        return
    except NotMember:
        await websocket.close(code=CLOSE_FORBIDDEN, reason="Not a party member")
        return
    except (ConnectionLimitError, ChannelLimitError) as exc:
        logger.warning("Connection refused for party %s: %s", party_id, exc)
        await websocket.close(code=CLOSE_TRY_AGAIN, reason="Party at capacity")
        return

    try:
        while True:
            frame = await websocket.receive_json()
            try:
                frame_type = validate_client_frame(frame)
            except ValidationError as exc:
                logger.warning("Invalid frame on party %s: %s", party_id, exc.message)
                await websocket.close(code=CLOSE_UNSUPPORTED, reason="Invalid payload")
                return
            if frame_type == "visibility":
                presence.mark_visible(subscription.id, frame["visible"])
            elif frame_type == "ping":
                await websocket.send_json({"name": "pong"})
    except WebSocketDisconnect:
        logger.debug("Client disconnected from party %s", party_id)
    except InvalidTransition as exc:
        # the hub already dropped this subscription
        logger.debug("Stale subscription on party %s: %s", party_id, exc)
    except ValueError as exc:
        logger.warning("Undecodable frame on party %s: %s", party_id, exc)
        await websocket.close(code=CLOSE_UNSUPPORTED, reason="Invalid payload")
    finally:
        await sequencer.disconnect(subscription)
