# slot_cache.py
import json
import logging
import os

from redis.exceptions import RedisError

KEY_PREFIX = "availability:doctor"


def cache_expiry_seconds():
    return int(os.getenv('CACHE_EXPIRY_SECONDS', 3600))


def slots_cache_key(doctor_ref, ymd):
    return f"{KEY_PREFIX}:{doctor_ref}:slots:{ymd}"


def doctor_cache_pattern(doctor_ref):
    return f"{KEY_PREFIX}:{doctor_ref}:slots:*"


def cached_slots(redis_client, doctor_ref, ymd, compute):
    """
    Return the slot grid for a doctor's date from Redis, computing and storing it on a miss.

    The grid depends only on availability configuration, never on bookings, so
    it stays valid until the doctor edits their availability. Redis being down
    is not fatal: the grid is computed directly.
    """
    if redis_client is None:
        return compute()

    cache_key = slots_cache_key(doctor_ref, ymd)
    try:
        cached = redis_client.get(cache_key)
        if cached is not None:
            logging.info(f"Retrieved from Redis: {cache_key}")
            return json.loads(cached)
    except RedisError as e:
        logging.warning(f"Slot cache read failed for {cache_key}: {e}")
        return compute()

    slots = compute()
    try:
        redis_client.setex(cache_key, cache_expiry_seconds(), json.dumps(slots))
    except RedisError as e:
        logging.warning(f"Slot cache write failed for {cache_key}: {e}")
    return slots


def invalidate_doctor(redis_client, doctor_ref):
    if redis_client is None:
        return 0
    try:
        keys = list(redis_client.scan_iter(match=doctor_cache_pattern(doctor_ref)))
        if keys:
            redis_client.delete(*keys)
        return len(keys)
    except RedisError as e:
        logging.warning(f"Slot cache invalidation failed for doctor {doctor_ref}: {e}")
        return 0
