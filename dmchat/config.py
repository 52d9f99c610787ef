import os

from dotenv import load_dotenv


load_dotenv()


MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "dmchat")

# Empty -> in-process fan-out only
REDIS_URL = os.getenv("REDIS_URL", "")
REALTIME_CHANNEL = os.getenv("REALTIME_CHANNEL", "dmchat:events")

SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

PRESENCE_TIMEOUT_SECONDS = float(os.getenv("PRESENCE_TIMEOUT_SECONDS", "30"))
PRESENCE_SWEEP_INTERVAL_SECONDS = float(os.getenv("PRESENCE_SWEEP_INTERVAL_SECONDS", "10"))

TYPING_IDLE_SECONDS = float(os.getenv("TYPING_IDLE_SECONDS", "3"))

SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "256"))
# "drop_oldest" | "disconnect"
SUBSCRIBER_OVERFLOW_POLICY = os.getenv("SUBSCRIBER_OVERFLOW_POLICY", "drop_oldest")

MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", "10000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
