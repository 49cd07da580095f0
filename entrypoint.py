import uvicorn
import constants
from logging_config import setup_logging

# Setup logging before importing app
setup_logging(log_level=constants.LOG_LEVEL, log_file=constants.LOG_FILE)

from app import app
from logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    logger.info(f"Starting signaling relay on {constants.HOST}:{constants.PORT}")
    # Rooms live in process memory unless REGISTRY_BACKEND=redis, so run a single worker
    uvicorn.run(app, host=constants.HOST, port=constants.PORT)
