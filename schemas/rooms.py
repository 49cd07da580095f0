from pydantic import BaseModel

from schemas.signaling import Participant


class RoomDetailsResponse(BaseModel):
    room_id: str
    participants_count: int
    participants: list[Participant]
