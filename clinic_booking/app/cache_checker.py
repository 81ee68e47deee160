# cache_checker.py
import json
import logging

from .availability import compute_slots_for_date
from .dependencies import SessionLocal, get_redis_client
from .models import Availability
from .slot_cache import cache_expiry_seconds, doctor_cache_pattern


def acquire_lock(redis_client, lock_key, ttl=10):
    return redis_client.set(lock_key, "locked", nx=True, ex=ttl)


def release_lock(redis_client, lock_key):
    redis_client.delete(lock_key)


def compare_time_slots(correct_time_slots, cached_time_slots):
    discrepancies = []
    correct_set = {tuple(sorted(slot.items())) for slot in correct_time_slots}
    cached_set = {tuple(sorted(slot.items())) for slot in cached_time_slots}

    for item in correct_set - cached_set:
        discrepancies.append(f"Missing in cache: {dict(item)}")
        logging.info(f"Missing in cache: {dict(item)}")

    for item in cached_set - correct_set:
        discrepancies.append(f"Unexpected in cache: {dict(item)}")
        logging.info(f"Unexpected in cache: {dict(item)}")

    return discrepancies


def check_and_sync_cache(session_factory=SessionLocal, redis_client=None):
    """Re-derive every cached slot grid from the database and rewrite the stale ones. Returns the keys fixed."""
    redis_client = redis_client or get_redis_client()
    fixed = []

    db = session_factory()
    try:
        for availability in db.query(Availability).all():
            lock_key = f"lock:availability:doctor:{availability.doctor_ref}"

            if not acquire_lock(redis_client, lock_key):
                logging.info(f"Cache check skipped for doctor {availability.doctor_ref} "
                             f"because another process is running.")
                continue

            try:
                for cache_key in redis_client.scan_iter(match=doctor_cache_pattern(availability.doctor_ref)):
                    cached = redis_client.get(cache_key)
                    if cached is None:
                        continue
                    ymd = cache_key.rsplit(":", 1)[-1]
                    correct_time_slots = compute_slots_for_date(availability, ymd)

                    diff = compare_time_slots(correct_time_slots, json.loads(cached))
                    if diff:
                        logging.warning(f"Discrepancy found for {cache_key}: {len(diff)} slot(s)")
                        redis_client.set(cache_key, json.dumps(correct_time_slots), ex=cache_expiry_seconds())
                        fixed.append(cache_key)
                    else:
                        logging.info(f"Cache is consistent for {cache_key}.")
            finally:
                release_lock(redis_client, lock_key)
    finally:
        db.close()

    return fixed
