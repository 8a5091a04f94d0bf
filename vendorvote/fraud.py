import hashlib
import json
import logging
import time

from vendorvote.redis_client import PHOTO_HASHES_PREFIX, SUSPICIOUS_ACTIVITY_PREFIX, redis_client
from vendorvote.windows import DAY_SECONDS

logger = logging.getLogger(__name__)

HASH_RETENTION = DAY_SECONDS
ACTIVITY_RETENTION = DAY_SECONDS
ACTIVITY_LOG_SIZE = 100

DUPLICATE_PHOTO = "duplicate_photo"


def photo_hash(photo_url: str) -> str:
    return hashlib.sha256(photo_url.encode("utf-8")).hexdigest()


class DuplicateEvidenceFilter:
    def __init__(self, client=None):
        self.client = client if client is not None else redis_client

    def is_duplicate(self, content_hash: str) -> bool:
        # SET NX records a first sighting and reports a repeat in one round trip
        first_seen = self.client.set(
            f"{PHOTO_HASHES_PREFIX}{content_hash}", "1", nx=True, ex=HASH_RETENTION
        )
        return not first_seen

    def track_suspicious_activity(self, user_id: str, activity: str, **details) -> None:
        key = f"{SUSPICIOUS_ACTIVITY_PREFIX}{user_id}"
        entry = {"activity": activity, "timestamp": int(time.time() * 1000)}
        entry.update(details)
        pipe = self.client.pipeline()
        pipe.lpush(key, json.dumps(entry))
        pipe.ltrim(key, 0, ACTIVITY_LOG_SIZE - 1)
        pipe.expire(key, ACTIVITY_RETENTION)
        pipe.execute()
        logger.warning("Suspicious activity from user %s: %s", user_id, activity)

    def recent_activity(self, user_id: str) -> list[dict]:
        entries = self.client.lrange(f"{SUSPICIOUS_ACTIVITY_PREFIX}{user_id}", 0, -1)
        return [json.loads(entry) for entry in entries]

    def release(self, content_hash: str) -> None:
        """Forget a hash recorded for a vote that was not accepted after all."""
        self.client.delete(f"{PHOTO_HASHES_PREFIX}{content_hash}")
