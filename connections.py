from fastapi import WebSocket
import asyncio
import json
import redis
import time
import uuid
from typing import Dict, Iterable, Optional

import constants
from redis_keys import REDIS_CONN_INSTANCE_KEY, REDIS_INSTANCE_ALIVE_KEY, REDIS_INSTANCE_CHANNEL
from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """Live WebSockets of this instance, keyed by connection id.

    Sends are fire-and-forget: a failed or unaddressable send is logged and
    reported through the return value, never raised to the caller.
    """

    def __init__(self):
        # Format: {connection_id: websocket}
        self.active_connections: Dict[str, WebSocket] = {}

    def register(self, conn_id: str, websocket: WebSocket):
        self.active_connections[conn_id] = websocket
        logger.debug(f"Registered connection {conn_id} (active connections: {len(self.active_connections)})")

    def unregister(self, conn_id: str):
        if self.active_connections.pop(conn_id, None) is not None:
            logger.debug(f"Unregistered connection {conn_id} (active connections: {len(self.active_connections)})")

    def is_connected(self, conn_id: str) -> bool:
        return conn_id in self.active_connections

    async def send(self, conn_id: str, event: str, data: dict) -> bool:
        return await self.send_local(conn_id, event, data)

    async def send_local(self, conn_id: str, event: str, data: dict) -> bool:
        websocket = self.active_connections.get(conn_id)
        if websocket is None:
            logger.debug(f"Dropping '{event}' for {conn_id}: not connected")
            return False
        try:
            await websocket.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.warning(f"Error sending '{event}' to connection {conn_id}: {e}")
            return False

    async def broadcast(self, conn_ids: Iterable[str], event: str, data: dict) -> int:
        """Send the same event to every given connection, returns how many succeeded."""
        results = await asyncio.gather(
            *(self.send(conn_id, event, data) for conn_id in conn_ids),
            return_exceptions=True,
        )
        delivered = sum(1 for result in results if result is True)
        logger.debug(f"Broadcasted '{event}' to {delivered}/{len(results)} connections")
        return delivered


class RedisConnectionManager(ConnectionManager):
    """Connection manager for running several instances against one Redis.

    Sockets still live in the instance that accepted them. A send to a socket
    held by another instance is published on that instance's channel, and
    listen() writes messages arriving on our own channel to our sockets.
    """

    def __init__(self, redis_client: redis.Redis, instance_id: Optional[str] = None,
                 heartbeat_ttl: int = constants.INSTANCE_HEARTBEAT_TTL):
        super().__init__()
        self.redis_client = redis_client
        self.instance_id = instance_id or uuid.uuid4().hex
        self.heartbeat_ttl = heartbeat_ttl
        self.channel = REDIS_INSTANCE_CHANNEL.format(instance_id=self.instance_id)
        self.pubsub = redis_client.pubsub()
        self.pubsub.subscribe(self.channel)
        self.heartbeat()
        logger.info(f"Instance {self.instance_id} subscribed to Redis channel {self.channel}")

    def heartbeat(self):
        self.redis_client.set(REDIS_INSTANCE_ALIVE_KEY.format(instance_id=self.instance_id), "1", ex=self.heartbeat_ttl)

    def register(self, conn_id: str, websocket: WebSocket):
        super().register(conn_id, websocket)
        self.redis_client.set(REDIS_CONN_INSTANCE_KEY.format(connection_id=conn_id), self.instance_id)

    def unregister(self, conn_id: str):
        super().unregister(conn_id)
        self.redis_client.delete(REDIS_CONN_INSTANCE_KEY.format(connection_id=conn_id))

    def owner_of(self, conn_id: str) -> Optional[str]:
        """Instance holding conn_id's socket, or None if unknown or that instance stopped heartbeating."""
        instance_id = self.redis_client.get(REDIS_CONN_INSTANCE_KEY.format(connection_id=conn_id))
        if instance_id is None:
            return None
        if not self.redis_client.exists(REDIS_INSTANCE_ALIVE_KEY.format(instance_id=instance_id)):
            return None
        return instance_id

    def is_connected(self, conn_id: str) -> bool:
        return conn_id in self.active_connections or self.owner_of(conn_id) is not None

    async def send(self, conn_id: str, event: str, data: dict) -> bool:
        if conn_id in self.active_connections:
            return await self.send_local(conn_id, event, data)

        instance_id = self.owner_of(conn_id)
        if instance_id is None or instance_id == self.instance_id:
            logger.debug(f"Dropping '{event}' for {conn_id}: not connected to any instance")
            return False

        channel = REDIS_INSTANCE_CHANNEL.format(instance_id=instance_id)
        try:
            subscribers = self.redis_client.publish(channel, json.dumps({"connId": conn_id, "event": event, "data": data}))
        except Exception as e:
            logger.warning(f"Error publishing '{event}' for {conn_id} to {channel}: {e}")
            return False
        logger.debug(f"Published '{event}' for {conn_id} to {channel}, {subscribers} subscribers")
        return subscribers > 0

    async def pump(self, timeout: float = 1.0, limit: int = 100) -> int:
        """Deliver messages waiting on this instance's channel, returns how many reached a socket.

        Stops when no message arrives within timeout or after limit messages.
        """
        loop = asyncio.get_running_loop()
        delivered = 0
        for _ in range(limit):
            # Blocking call, run it in the thread pool like any other sync Redis read
            message = await loop.run_in_executor(None, lambda: self.pubsub.get_message(timeout=timeout))
            if message is None:
                break
            if message.get("type") != "message":
                continue
            try:
                payload = json.loads(message["data"])
                conn_id, event, data = payload["connId"], payload["event"], payload["data"]
            except (ValueError, TypeError, KeyError) as e:
                logger.error(f"Error parsing message from Redis channel {self.channel}: {e}")
                continue
            if await self.send_local(conn_id, event, data):
                delivered += 1
        return delivered

    async def listen(self):
        """Background task: keep the heartbeat fresh and deliver messages from other instances."""
        logger.info(f"Starting Redis pub/sub listener for instance {self.instance_id}")
        last_heartbeat = time.monotonic()
        try:
            while True:
                if time.monotonic() - last_heartbeat >= self.heartbeat_ttl / 3:
                    self.heartbeat()
                    last_heartbeat = time.monotonic()
                await self.pump(timeout=1.0)
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for instance {self.instance_id}")
            raise
        finally:
            self.close()

    def close(self):
        try:
            self.pubsub.close()
            # Sockets held here are gone once the heartbeat key is
            self.redis_client.delete(REDIS_INSTANCE_ALIVE_KEY.format(instance_id=self.instance_id))
        except Exception as e:
            logger.error(f"Error closing pub/sub for instance {self.instance_id}: {e}")
