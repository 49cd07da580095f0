from pydantic import ValidationError
from typing import Any, Optional

from connections import ConnectionManager
from registry import SessionRegistry
from schemas.signaling import (
    Envelope,
    JoinPayload,
    RelayOfferPayload,
    RelayAnswerPayload,
    ChatRelayPayload,
    ScreenSharePayload,
    ScreenShareEndedPayload,
    LeavePayload,
)
from logging_config import get_logger

logger = get_logger(__name__)

# Outbound event names
CONNECTED = "connected"
PEERS_LIST = "peers-list"
PEER_JOINED = "peer-joined"
PEER_SIGNAL = "peer-signal"
SIGNAL_RETURNED = "signal-returned"
MESSAGE_RECEIVED = "message-received"
PEER_SCREEN_SHARE = "peer-screen-share"
PEER_SCREEN_SHARE_ENDED = "peer-screen-share-ended"
PEER_LEFT = "peer-left"


def default_display_name(conn_id: str) -> str:
    return f"User_{conn_id[:8]}"


class SignalingRouter:
    # Handlers do all registry reads and writes before their first await,
    # so each inbound message is one atomic state transition.

    def __init__(self, registry: SessionRegistry, connections: ConnectionManager):
        self.registry = registry
        self.connections = connections
        self._handlers = {
            "join": (JoinPayload, self.handle_join),
            "relay-offer": (RelayOfferPayload, self.handle_relay_offer),
            "relay-answer": (RelayAnswerPayload, self.handle_relay_answer),
            "chat-relay": (ChatRelayPayload, self.handle_chat_relay),
            "screen-share": (ScreenSharePayload, self.handle_screen_share),
            "screen-share-ended": (ScreenShareEndedPayload, self.handle_screen_share_ended),
            "leave": (LeavePayload, self.handle_leave),
        }

    async def connect(self, conn_id: str, websocket) -> None:
        self.connections.register(conn_id, websocket)
        await self.connections.send(conn_id, CONNECTED, {"connId": conn_id})

    async def dispatch(self, conn_id: str, message: Any) -> None:
        """Validate one inbound envelope and run its handler.

        Anything malformed is logged and dropped without touching room state.
        """
        try:
            envelope = Envelope.model_validate(message)
        except ValidationError as e:
            logger.warning(f"Dropping malformed envelope from {conn_id}: {e.error_count()} validation errors")
            return

        entry = self._handlers.get(envelope.event)
        if entry is None:
            logger.warning(f"Dropping unknown event '{envelope.event}' from {conn_id}")
            return

        payload_model, handler = entry
        try:
            payload = payload_model.model_validate(envelope.data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed '{envelope.event}' from {conn_id}: {e.errors()}")
            return

        await handler(conn_id, payload)

    def current_room(self, conn_id: str) -> Optional[str]:
        rooms = self.registry.rooms_containing(conn_id)
        return rooms[0] if rooms else None

    async def handle_join(self, conn_id: str, payload: JoinPayload) -> None:
        name = payload.name.strip() if payload.name and payload.name.strip() else default_display_name(conn_id)

        # A connection lives in one room at a time: a second join leaves the old one first
        departures = self._remove_from_rooms(conn_id)
        if departures:
            logger.info(f"Connection {conn_id} re-joining, left rooms {[room for room, _ in departures]}")

        self.registry.join(payload.room, conn_id, name)
        peers = self._live_others(payload.room, conn_id)
        logger.info(f"User {conn_id} ({name}) joined room {payload.room} with {len(peers)} existing peers")

        await self._announce_departures(conn_id, departures)
        await self.connections.send(conn_id, PEERS_LIST, {"peers": [peer.model_dump() for peer in peers]})
        await self.connections.broadcast(
            [peer.id for peer in peers],
            PEER_JOINED,
            {"callerId": conn_id, "name": name, "signal": None},
        )

    async def handle_relay_offer(self, conn_id: str, payload: RelayOfferPayload) -> None:
        if not self._require_joined(conn_id, "relay-offer"):
            return
        delivered = await self.connections.send(
            payload.targetId, PEER_SIGNAL, {"signal": payload.signal, "callerId": conn_id}
        )
        logger.debug(f"Relayed offer {conn_id} -> {payload.targetId}: delivered={delivered}")

    async def handle_relay_answer(self, conn_id: str, payload: RelayAnswerPayload) -> None:
        if not self._require_joined(conn_id, "relay-answer"):
            return
        delivered = await self.connections.send(
            payload.targetId, SIGNAL_RETURNED, {"id": conn_id, "signal": payload.signal}
        )
        logger.debug(f"Relayed answer {conn_id} -> {payload.targetId}: delivered={delivered}")

    async def handle_chat_relay(self, conn_id: str, payload: ChatRelayPayload) -> None:
        if not self._require_member(conn_id, payload.room, "chat-relay"):
            return
        user = payload.name if payload.name is not None else self.registry.display_name(payload.room, conn_id)
        recipients = [peer.id for peer in self.registry.list_others(payload.room, conn_id)]
        await self.connections.broadcast(recipients, MESSAGE_RECEIVED, {"user": user, "text": payload.text})

    async def handle_screen_share(self, conn_id: str, payload: ScreenSharePayload) -> None:
        if not self._require_member(conn_id, payload.room, "screen-share"):
            return
        recipients = [peer.id for peer in self.registry.list_others(payload.room, conn_id)]
        logger.info(f"User {conn_id} started screen share in room {payload.room}")
        await self.connections.broadcast(recipients, PEER_SCREEN_SHARE, {"peerId": conn_id, "stream": payload.stream})

    async def handle_screen_share_ended(self, conn_id: str, payload: ScreenShareEndedPayload) -> None:
        if not self._require_member(conn_id, payload.room, "screen-share-ended"):
            return
        recipients = [peer.id for peer in self.registry.list_others(payload.room, conn_id)]
        logger.info(f"User {conn_id} ended screen share in room {payload.room}")
        await self.connections.broadcast(recipients, PEER_SCREEN_SHARE_ENDED, {"peerId": conn_id})

    async def handle_leave(self, conn_id: str, payload: LeavePayload) -> None:
        await self._announce_departures(conn_id, self._remove_from_rooms(conn_id))

    async def disconnect(self, conn_id: str) -> None:
        self.connections.unregister(conn_id)
        departures = self._remove_from_rooms(conn_id)
        logger.info(f"Connection {conn_id} disconnected, leaving {len(departures)} room(s)")
        await self._announce_departures(conn_id, departures)

    def _live_others(self, room: str, conn_id: str):
        """Other participants of room whose socket is still held by some instance.

        Entries left behind by an instance that died are removed on the way.
        """
        peers = []
        for peer in self.registry.list_others(room, conn_id):
            if self.connections.is_connected(peer.id):
                peers.append(peer)
            else:
                self.registry.leave(room, peer.id)
                logger.info(f"Dropped stale participant {peer.id} from room {room}")
        return peers

    def _remove_from_rooms(self, conn_id: str):
        """Drop conn_id from every room it is in, returns [(room, remaining member ids)]."""
        departures = []
        for room in self.registry.rooms_containing(conn_id):
            if self.registry.leave(room, conn_id):
                remaining = [p.id for p in self.registry.participants(room)]
                departures.append((room, remaining))
                logger.info(f"User {conn_id} left room {room} ({len(remaining)} remaining)")
        return departures

    async def _announce_departures(self, conn_id: str, departures) -> None:
        for room, remaining in departures:
            await self.connections.broadcast(remaining, PEER_LEFT, {"connId": conn_id})

    def _require_joined(self, conn_id: str, event: str) -> bool:
        if self.current_room(conn_id) is None:
            logger.warning(f"Dropping '{event}' from {conn_id}: not in a room")
            return False
        return True

    def _require_member(self, conn_id: str, room: str, event: str) -> bool:
        if room not in self.registry.rooms_containing(conn_id):
            logger.warning(f"Dropping '{event}' from {conn_id}: not a member of room {room}")
            return False
        return True
