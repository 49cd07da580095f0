import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

# "memory" keeps rooms in this process, "redis" shares rooms and delivery between instances
REGISTRY_BACKEND = os.getenv("REGISTRY_BACKEND", "memory")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Seconds an instance stays "alive" in Redis without refreshing its heartbeat
INSTANCE_HEARTBEAT_TTL = int(os.getenv("INSTANCE_HEARTBEAT_TTL", 30))
