import json
from datetime import date, datetime

from vendorvote.fraud import DuplicateEvidenceFilter, photo_hash
from vendorvote.redis_client import BalanceCache, CounterStore, vendor_day_key, weekly_key
from vendorvote.windows import day_bounds, local_day, week_key, week_start


class TestDuplicateEvidenceFilter:
    def test_first_sighting_is_not_duplicate(self, fake_redis):
        evidence = DuplicateEvidenceFilter(fake_redis)
        content_hash = photo_hash("https://img.example/1.jpg")

        assert not evidence.is_duplicate(content_hash)
        assert evidence.is_duplicate(content_hash)
        assert evidence.is_duplicate(content_hash)

    def test_hash_expires_after_a_day(self, fake_redis):
        evidence = DuplicateEvidenceFilter(fake_redis)
        content_hash = photo_hash("https://img.example/2.jpg")
        evidence.is_duplicate(content_hash)

        ttl = fake_redis.ttl(f"photo_hashes:{content_hash}")
        assert 0 < ttl <= 24 * 60 * 60

    def test_released_hash_can_be_used_again(self, fake_redis):
        evidence = DuplicateEvidenceFilter(fake_redis)
        content_hash = photo_hash("https://img.example/3.jpg")
        evidence.is_duplicate(content_hash)

        evidence.release(content_hash)

        assert not evidence.is_duplicate(content_hash)

    def test_hash_is_stable_and_url_specific(self):
        assert photo_hash("https://img.example/a.jpg") == photo_hash("https://img.example/a.jpg")
        assert photo_hash("https://img.example/a.jpg") != photo_hash("https://img.example/b.jpg")
        assert len(photo_hash("x")) == 64

    def test_suspicious_activity_keeps_last_hundred(self, fake_redis):
        evidence = DuplicateEvidenceFilter(fake_redis)
        for n in range(105):
            evidence.track_suspicious_activity("1001", "duplicate_photo", attempt=n)

        entries = evidence.recent_activity("1001")
        assert len(entries) == 100
        assert entries[0]["attempt"] == 104
        assert entries[-1]["attempt"] == 5
        assert 0 < fake_redis.ttl("suspicious_activity:1001") <= 24 * 60 * 60

    def test_suspicious_activity_entry_shape(self, fake_redis):
        DuplicateEvidenceFilter(fake_redis).track_suspicious_activity("7", "duplicate_photo", vendorId="v1")

        (raw,) = fake_redis.lrange("suspicious_activity:7", 0, -1)
        entry = json.loads(raw)
        assert entry["activity"] == "duplicate_photo"
        assert entry["vendorId"] == "v1"
        assert isinstance(entry["timestamp"], int)


class TestCounterStore:
    def test_increment_counts_up(self, fake_redis):
        counters = CounterStore(fake_redis)
        key = vendor_day_key("1001", "v1", "2026-03-10")

        assert counters.get(key) == 0
        assert counters.increment(key, CounterStore.DAILY_TTL) == 1
        assert counters.increment(key, CounterStore.DAILY_TTL) == 2
        assert counters.get(key) == 2

    def test_increment_sets_expiry(self, fake_redis):
        counters = CounterStore(fake_redis)
        key = weekly_key("1001", "2026-W11")
        counters.increment(key, CounterStore.WEEKLY_TTL)

        assert 0 < fake_redis.ttl(key) <= 7 * 24 * 60 * 60

    def test_keys_are_scoped(self):
        assert vendor_day_key("u", "v", "2026-03-10") == "vote_limit:u:v:2026-03-10"
        assert weekly_key("u", "2026-W11") == "vote_limit:u:weekly:2026-W11"


class TestBalanceCache:
    def test_set_get_invalidate(self, fake_redis):
        cache = BalanceCache(fake_redis)
        assert cache.get("1001") is None

        cache.set("1001", 42)
        assert cache.get("1001") == 42
        assert 0 < fake_redis.ttl("user_tokens:1001") <= 3600

        cache.invalidate("1001")
        assert cache.get("1001") is None


class TestWindows:
    def test_week_starts_monday(self):
        assert week_start(date(2026, 3, 10)) == date(2026, 3, 9)
        assert week_start(date(2026, 3, 9)) == date(2026, 3, 9)
        assert week_start(date(2026, 3, 15)) == date(2026, 3, 9)

    def test_week_key(self):
        assert week_key(date(2026, 3, 10)) == "2026-W11"
        assert week_key(date(2026, 1, 1)) == "2026-W01"

    def test_day_bounds_cover_one_day(self):
        start, end = day_bounds(date(2026, 3, 10))
        assert start == datetime(2026, 3, 10)
        assert end == datetime(2026, 3, 11)

    def test_local_day(self):
        assert local_day(datetime(2026, 3, 10, 23, 59)) == date(2026, 3, 10)
        assert local_day(datetime(2026, 3, 11, 0, 0)) == date(2026, 3, 11)
