# crm_automation/db/redis_client.py
import os
import redis.asyncio as redis

# Load Redis URL from environment, fallback to default
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Shared client for delivery-guard keys; closed by the app lifespan
redis_client = redis.from_url(REDIS_URL, decode_responses=True)
