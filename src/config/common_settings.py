import os
from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file

# --------------------------------------------------
# Entity Store Configuration
# --------------------------------------------------
# Available backends: "memory", "postgresql"
ENTITY_STORE_BACKEND = (os.environ.get("ENTITY_STORE_BACKEND") or "memory").lower()

# --------------------------------------------------
# Database Pool Configuration (postgresql backend only)
# --------------------------------------------------
# Connection settings are read by src/config/database_config.py on first use
DB_POOL_MIN = int(os.environ.get("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.environ.get("DB_POOL_MAX", "5"))

# --------------------------------------------------
# Result Refresh Configuration
# --------------------------------------------------
# "eager": global delegation changes recompute every voted proposal of the org
# "lazy": only the proposal named by the write is recomputed
GLOBAL_DELEGATION_REFRESH = (os.environ.get("GLOBAL_DELEGATION_REFRESH") or "eager").lower()

# --------------------------------------------------
# API Key Configuration
# --------------------------------------------------
REQUIRED_API_KEY = os.environ.get("LIQUID_VOTING_TOKEN")

# --------------------------------------------------
# HTTP / Subscription Configuration
# --------------------------------------------------
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "*")
SUBSCRIPTION_QUEUE_SIZE = int(os.environ.get("SUBSCRIPTION_QUEUE_SIZE", "100"))
SUBSCRIPTION_KEEPALIVE_SECONDS = float(os.environ.get("SUBSCRIPTION_KEEPALIVE_SECONDS", "15"))
