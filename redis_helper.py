# redis_helper.py

import redis
import os
from dotenv import load_dotenv
import logging

load_dotenv()

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_DB = int(os.getenv("REDIS_DB", 0))
REDIS_NAMESPACE = os.getenv("REDIS_NAMESPACE", "booking_odoo_middleware")

# Redis client, connects lazily on first command
redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, db=REDIS_DB)


def _ns_key(key: str) -> str:
    """Applies namespace to key."""
    namespaced_key = f"{REDIS_NAMESPACE}:{key}"
    logging.debug("Returning namespaced key: %s", namespaced_key)
    return namespaced_key


def redis_incr_window(key: str, window_seconds: int, client=None):
    """
    Increment a counter that expires window_seconds after its first hit.

    Returns (count, seconds_to_expiry), or None when Redis is unreachable.
    """
    client = client or redis_client
    namespaced_key = _ns_key(key)
    try:
        count = client.incr(namespaced_key)
        if count == 1:
            client.expire(namespaced_key, window_seconds)
        ttl = client.ttl(namespaced_key)
        if ttl is None or ttl < 0:
            # counter lost its expiry (crash between INCR and EXPIRE)
            client.expire(namespaced_key, window_seconds)
            ttl = window_seconds
    except redis.exceptions.RedisError as e:
        logging.error("Error incrementing key %s: %s", namespaced_key, e)
        return None
    return int(count), int(ttl)
