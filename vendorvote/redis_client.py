from typing import Optional

import redis

from vendorvote.config import REDIS_URL
from vendorvote.windows import DAY_SECONDS, WEEK_SECONDS

redis_client = redis.from_url(REDIS_URL, decode_responses=True)

VOTE_LIMIT_PREFIX = "vote_limit:"
USER_TOKENS_PREFIX = "user_tokens:"
VOTE_STREAKS_PREFIX = "vote_streaks:"
PHOTO_HASHES_PREFIX = "photo_hashes:"
SUSPICIOUS_ACTIVITY_PREFIX = "suspicious_activity:"

BALANCE_TTL = 60 * 60
STREAK_TTL = 2 * DAY_SECONDS


def vendor_day_key(user_id: str, vendor_id: str, day: str) -> str:
    return f"{VOTE_LIMIT_PREFIX}{user_id}:{vendor_id}:{day}"


def weekly_key(user_id: str, week: str) -> str:
    return f"{VOTE_LIMIT_PREFIX}{user_id}:weekly:{week}"


class CounterStore:
    """Atomic increment-with-expiry counters keyed by entity and time window."""

    DAILY_TTL = DAY_SECONDS
    WEEKLY_TTL = WEEK_SECONDS

    def __init__(self, client=None):
        self.client = client if client is not None else redis_client

    def increment(self, key: str, ttl: int) -> int:
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, ttl)
        count, _ = pipe.execute()
        return int(count)

    def get(self, key: str) -> int:
        return int(self.client.get(key) or 0)


class BalanceCache:
    """Read accelerator for token balances. Never authoritative."""

    def __init__(self, client=None):
        self.client = client if client is not None else redis_client

    def get(self, user_id: str) -> Optional[int]:
        value = self.client.get(f"{USER_TOKENS_PREFIX}{user_id}")
        return int(value) if value is not None else None

    def set(self, user_id: str, balance: int) -> None:
        self.client.setex(f"{USER_TOKENS_PREFIX}{user_id}", BALANCE_TTL, balance)

    def invalidate(self, user_id: str) -> None:
        self.client.delete(f"{USER_TOKENS_PREFIX}{user_id}")


class StreakCache:
    def __init__(self, client=None):
        self.client = client if client is not None else redis_client

    def get(self, user_id: str) -> Optional[int]:
        value = self.client.get(f"{VOTE_STREAKS_PREFIX}{user_id}")
        return int(value) if value is not None else None

    def set(self, user_id: str, streak: int) -> None:
        # A streak that is not extended tomorrow must not outlive its validity
        self.client.setex(f"{VOTE_STREAKS_PREFIX}{user_id}", STREAK_TTL, streak)

    def invalidate(self, user_id: str) -> None:
        self.client.delete(f"{VOTE_STREAKS_PREFIX}{user_id}")
