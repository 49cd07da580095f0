from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import RoomDetailsResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get the participants currently connected to a room.

    Returns:
    - room_id: The room identifier, exactly as clients send it
    - participants_count: Number of connected participants
    - participants: List of {id, name}
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    participants = request.app.state.signaling.registry.participants(room_id)
    if not participants:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    logger.info(f"Room details retrieved for {room_id}: {len(participants)} participants online")

    return RoomDetailsResponse(
        room_id=room_id,
        participants_count=len(participants),
        participants=participants,
    )
