from fastapi import APIRouter, Depends, HTTPException, Request, status

from backend import RedisBackend, get_backend
from errors import InvalidInput, RoomNotFound, StoreReadFailed, StoreWriteFailed
from logging_config import get_logger
from schemas.rooms import CreateRoomRequest, Message, Room, RoomDetailsResponse, SendMessageRequest

logger = get_logger(__name__)

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def _client_host(request: Request) -> str:
    return request.client.host if request and request.client else "unknown"


def _http_error(status_code: int, error) -> HTTPException:
    return HTTPException(status_code=status_code, detail=error.to_dict())


@rooms_router.get("/", response_model=list[Room])
async def list_rooms(backend: RedisBackend = Depends(get_backend)):
    try:
        return await backend.list_rooms()
    except StoreReadFailed as e:
        raise _http_error(status.HTTP_503_SERVICE_UNAVAILABLE, e)


@rooms_router.post("/", response_model=Room, status_code=status.HTTP_201_CREATED)
async def create_room(room: CreateRoomRequest, request: Request, backend: RedisBackend = Depends(get_backend)):
    logger.info(f"Room creation request from {_client_host(request)}, name: {room.name}")
    name = room.name.strip()
    if not name:
        raise _http_error(HTTP_422_UNPROCESSABLE, InvalidInput("Please enter a room name"))
    try:
        return await backend.create_room(name)
    except StoreWriteFailed as e:
        raise _http_error(status.HTTP_502_BAD_GATEWAY, e)


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request, backend: RedisBackend = Depends(get_backend)):
    logger.info(f"Room details request for {room_id} from {_client_host(request)}")
    try:
        room = await backend.get_room(room_id)
        message_count = await backend.count_messages(room_id)
    except RoomNotFound as e:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise _http_error(status.HTTP_404_NOT_FOUND, e)
    except StoreReadFailed as e:
        raise _http_error(status.HTTP_503_SERVICE_UNAVAILABLE, e)
    return RoomDetailsResponse(room=room, message_count=message_count)


@rooms_router.get("/{room_id}/messages", response_model=list[Message])
async def list_messages(room_id: str, backend: RedisBackend = Depends(get_backend)):
    try:
        await backend.get_room(room_id)
        return await backend.list_messages(room_id)
    except RoomNotFound as e:
        raise _http_error(status.HTTP_404_NOT_FOUND, e)
    except StoreReadFailed as e:
        raise _http_error(status.HTTP_503_SERVICE_UNAVAILABLE, e)


@rooms_router.post("/{room_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(room_id: str, payload: SendMessageRequest, backend: RedisBackend = Depends(get_backend)):
    if not payload.author.strip():
        raise _http_error(HTTP_422_UNPROCESSABLE, InvalidInput("Please enter your name"))
    if not payload.body.strip():
        raise _http_error(HTTP_422_UNPROCESSABLE, InvalidInput("Message body is empty"))
    try:
        return await backend.append_message(room_id, payload.author.strip(), payload.body)
    except StoreWriteFailed as e:
        raise _http_error(status.HTTP_502_BAD_GATEWAY, e)
