import redis
from typing import Dict, List, Optional, Set

import constants
from redis_keys import REDIS_ROOM_KEY, REDIS_CONN_ROOMS_KEY
from schemas.signaling import Participant
from logging_config import get_logger

logger = get_logger(__name__)


class SessionRegistry:
    """Who is connected to which room.

    The signaling router only talks to this interface, so the in-process
    implementation can be swapped for a shared store when running several
    instances.
    """

    def join(self, room: str, conn_id: str, name: str) -> None:
        raise NotImplementedError

    def leave(self, room: str, conn_id: str) -> bool:
        raise NotImplementedError

    def participants(self, room: str) -> List[Participant]:
        raise NotImplementedError

    def rooms_containing(self, conn_id: str) -> List[str]:
        raise NotImplementedError

    def display_name(self, room: str, conn_id: str) -> Optional[str]:
        raise NotImplementedError

    def list_others(self, room: str, conn_id: str) -> List[Participant]:
        return [p for p in self.participants(room) if p.id != conn_id]


class InMemorySessionRegistry(SessionRegistry):
    def __init__(self):
        # Format: {room_id: {connection_id: display_name}}
        self._rooms: Dict[str, Dict[str, str]] = {}
        # Format: {connection_id: {room_id, ...}}
        self._memberships: Dict[str, Set[str]] = {}

    def join(self, room: str, conn_id: str, name: str) -> None:
        self._rooms.setdefault(room, {})[conn_id] = name
        self._memberships.setdefault(conn_id, set()).add(room)
        logger.debug(f"Registered {conn_id} ({name}) in room {room} ({len(self._rooms[room])} participants)")

    def leave(self, room: str, conn_id: str) -> bool:
        members = self._rooms.get(room)
        if members is None or conn_id not in members:
            return False

        del members[conn_id]
        if not members:
            del self._rooms[room]
            logger.debug(f"Room {room} is empty, dropped it")

        rooms = self._memberships.get(conn_id)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                del self._memberships[conn_id]
        return True

    def participants(self, room: str) -> List[Participant]:
        return [Participant(id=conn_id, name=name) for conn_id, name in self._rooms.get(room, {}).items()]

    def rooms_containing(self, conn_id: str) -> List[str]:
        return sorted(self._memberships.get(conn_id, ()))

    def display_name(self, room: str, conn_id: str) -> Optional[str]:
        return self._rooms.get(room, {}).get(conn_id)


class RedisSessionRegistry(SessionRegistry):
    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client

    def join(self, room: str, conn_id: str, name: str) -> None:
        room_key = REDIS_ROOM_KEY.format(slug=room)
        conn_key = REDIS_CONN_ROOMS_KEY.format(connection_id=conn_id)
        pipe = self.redis_client.pipeline()
        pipe.hset(room_key, conn_id, name)
        pipe.sadd(conn_key, room)
        pipe.execute()
        logger.debug(f"Registered {conn_id} ({name}) in room {room} at key {room_key}")

    def leave(self, room: str, conn_id: str) -> bool:
        room_key = REDIS_ROOM_KEY.format(slug=room)
        conn_key = REDIS_CONN_ROOMS_KEY.format(connection_id=conn_id)
        pipe = self.redis_client.pipeline()
        pipe.hdel(room_key, conn_id)
        pipe.srem(conn_key, room)
        removed, _ = pipe.execute()
        return bool(removed)

    def participants(self, room: str) -> List[Participant]:
        members = self.redis_client.hgetall(REDIS_ROOM_KEY.format(slug=room))
        return [Participant(id=conn_id, name=name) for conn_id, name in members.items()]

    def rooms_containing(self, conn_id: str) -> List[str]:
        return sorted(self.redis_client.smembers(REDIS_CONN_ROOMS_KEY.format(connection_id=conn_id)))

    def display_name(self, room: str, conn_id: str) -> Optional[str]:
        return self.redis_client.hget(REDIS_ROOM_KEY.format(slug=room), conn_id)


def create_redis_client() -> redis.Redis:
    try:
        client = redis.Redis(
            host=constants.REDIS_HOST,
            port=constants.REDIS_PORT,
            password=constants.REDIS_PASSWORD,
            decode_responses=True,
        )
        client.ping()
        logger.info(f"Redis client connected successfully to {constants.REDIS_HOST}:{constants.REDIS_PORT}")
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {constants.REDIS_HOST}:{constants.REDIS_PORT}: {e}", exc_info=True)
        raise
    return client


def create_registry(backend: Optional[str] = None, redis_client: Optional[redis.Redis] = None) -> SessionRegistry:
    backend = (backend or constants.REGISTRY_BACKEND).lower()
    if backend == "memory":
        logger.info("Using in-memory session registry")
        return InMemorySessionRegistry()
    if backend == "redis":
        logger.info("Using Redis session registry")
        return RedisSessionRegistry(redis_client or create_redis_client())
    raise ValueError(f"Unknown registry backend: {backend}")
