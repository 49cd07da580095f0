from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from registry import create_registry, create_redis_client
from connections import ConnectionManager, RedisConnectionManager
from signaling import SignalingRouter
from contextlib import asynccontextmanager
import constants
import asyncio
import uuid
import json
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=constants.LOG_LEVEL, log_file=constants.LOG_FILE)
logger = get_logger(__name__)


def create_signaling() -> SignalingRouter:
    if constants.REGISTRY_BACKEND.lower() == "redis":
        # Rooms and delivery shared through Redis, any number of instances
        redis_client = create_redis_client()
        return SignalingRouter(create_registry("redis", redis_client), RedisConnectionManager(redis_client))
    return SignalingRouter(create_registry(), ConnectionManager())


@asynccontextmanager
async def lifespan(app: FastAPI):
    listener = None
    connections = app.state.signaling.connections
    if isinstance(connections, RedisConnectionManager):
        listener = asyncio.create_task(connections.listen())
        logger.debug(f"Started Redis pub/sub listener for instance {connections.instance_id}")
    yield
    if listener is not None:
        listener.cancel()
        try:
            await listener
        except asyncio.CancelledError:
            pass
        logger.debug(f"Cancelled Redis pub/sub listener for instance {connections.instance_id}")


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=constants.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

# Room membership and live sockets; handlers look it up through app.state
app.state.signaling = create_signaling()

logger.info("FastAPI application initialized")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Signaling channel for one client.

    Every frame is a JSON object {"event": ..., "data": {...}}; replies and
    relayed messages use the same shape.
    """
    signaling: SignalingRouter = websocket.app.state.signaling
    connection_id = str(uuid.uuid4())

    await websocket.accept()
    logger.info(f"WebSocket connection accepted: {connection_id}")

    try:
        await signaling.connect(connection_id, websocket)

        message_count = 0
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                break
            except KeyError:
                # Starlette raises KeyError('text') for binary frames
                logger.warning(f"Ignoring binary frame from connection {connection_id}")
                continue
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {connection_id}")

            try:
                message = json.loads(data)
            except (ValueError, RecursionError):
                # JSONDecodeError is a ValueError; deeply nested frames raise RecursionError
                preview = data[:100]
                logger.warning(f"Invalid JSON from connection {connection_id}. Preview: {preview}")
                continue

            try:
                await signaling.dispatch(connection_id, message)
            except Exception as e:
                # One bad message must not take the connection or its rooms down
                logger.error(f"Error handling message from connection {connection_id}: {e}", exc_info=True)
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        await signaling.disconnect(connection_id)
