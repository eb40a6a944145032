import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# Event channel tuning (seconds)
CHANNEL_POLL_TIMEOUT = float(os.getenv("CHANNEL_POLL_TIMEOUT", 1.0))
CHANNEL_RECONNECT_DELAY = float(os.getenv("CHANNEL_RECONNECT_DELAY", 1.0))
CHANNEL_READY_TIMEOUT = float(os.getenv("CHANNEL_READY_TIMEOUT", 5.0))

# Table names as seen by subscribers
ROOMS_TABLE = "chat_rooms"
MESSAGES_TABLE = "messages"

# Columns a subscriber may filter insert events on, per table
FILTER_COLUMNS = {
    ROOMS_TABLE: (),
    MESSAGES_TABLE: ("room_id",),
}
