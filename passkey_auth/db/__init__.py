"""
Database Module

Users and credentials live in SQLAlchemy. Challenges and sessions live in
Redis when REDIS_URL is configured, and fall back to an in-process
dictionary otherwise.

Dictionaries should not be used in production
"""

from ..config import Settings
from ..helpers import Clock, utcnow
from .base import KeyValueStore
from .kv_dictionary import TTLDictionary
from .kv_redis import RedisKeyValueStore


def create_key_value_store(settings: Settings, clock: Clock = utcnow) -> KeyValueStore:
    """
    Select the challenge/session backend for the given settings
    """
    if settings.redis_url:
        return RedisKeyValueStore.from_url(settings.redis_url)
    return TTLDictionary(clock=clock)
