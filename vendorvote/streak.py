"""Consecutive-day voting streaks.

The ``users`` row holds the authoritative streak together with the day it was
last advanced. Redis keeps a short-lived copy for display. When the stored
value cannot be read the streak is rebuilt from the vote ledger.
"""
import logging
from datetime import date, timedelta
from typing import Optional

import redis
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from vendorvote.database import SessionLocal
from vendorvote.models import User, Vote
from vendorvote.redis_client import StreakCache
from vendorvote.windows import day_bounds, day_start, local_day, utcnow

logger = logging.getLogger(__name__)

LOOKBACK_DAYS = 30


def consecutive_days(voted_days: set, anchor: date, limit: int = LOOKBACK_DAYS) -> list[date]:
    """Days of the unbroken run ending at ``anchor``, newest first."""
    run = []
    for offset in range(limit):
        day = anchor - timedelta(days=offset)
        if day not in voted_days:
            break
        run.append(day)
    return run


def longest_run(voted_days: set) -> int:
    best = 0
    current = 0
    previous = None
    for day in sorted(voted_days):
        if previous is not None and day - previous == timedelta(days=1):
            current += 1
        else:
            current = 1
        best = max(best, current)
        previous = day
    return best


class StreakTracker:
    def __init__(self, session_factory=SessionLocal, cache: Optional[StreakCache] = None, clock=utcnow):
        self.session_factory = session_factory
        self.cache = cache if cache is not None else StreakCache()
        self.clock = clock

    def today(self) -> date:
        return local_day(self.clock())

    def get_streak(self, user_id: str) -> int:
        try:
            with self.session_factory() as db:
                streak = db.execute(
                    select(User.vote_streak).where(User.id == user_id)
                ).scalar_one_or_none()
            return streak or 0
        except SQLAlchemyError:
            logger.warning("Stored streak unavailable for user %s, recomputing from votes", user_id, exc_info=True)
            return self.recompute(user_id)

    def recompute(self, user_id: str) -> int:
        """Rebuild the streak from the last LOOKBACK_DAYS of the ledger.

        The run is anchored at the most recent voting day, so a user who has
        not voted yet today keeps the streak they held yesterday.
        """
        today = self.today()
        voted_days = self._voted_days(user_id, since=today - timedelta(days=LOOKBACK_DAYS - 1))
        if not voted_days:
            return 0
        return len(consecutive_days(voted_days, max(voted_days), LOOKBACK_DAYS))

    def cached_streak(self, user_id: str) -> int:
        try:
            cached = self.cache.get(user_id)
        except redis.RedisError:
            logger.warning("Streak cache unavailable for user %s", user_id)
            return self.get_streak(user_id)
        if cached is not None:
            return cached

        streak = self.get_streak(user_id)
        try:
            self.cache.set(user_id, streak)
        except redis.RedisError:
            logger.warning("Could not repopulate streak cache for user %s", user_id)
        return streak

    def voted_on(self, user_id: str, day: date) -> bool:
        with self.session_factory() as db:
            return self._voted_on(db, user_id, day)

    def projected_streak(self, user_id: str) -> int:
        """Streak the user will hold once a vote cast now is recorded."""
        today = self.today()
        try:
            with self.session_factory() as db:
                user = db.get(User, user_id)
                return self._next_streak(db, user_id, user, today)
        except SQLAlchemyError:
            logger.warning("Stored streak unavailable for user %s, projecting from votes", user_id, exc_info=True)
            return self._project_from_ledger(user_id, today)

    def advance_on_vote(self, user_id: str) -> int:
        """Advance the streak for a vote cast today.

        Only the first call per calendar day moves the streak; later calls on
        the same day return the stored value unchanged.
        """
        today = self.today()
        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise LookupError(f"Unknown user {user_id}")
            if user.streak_day == today:
                return user.vote_streak

            previous = user.vote_streak
            streak = self._next_streak(db, user_id, user, today)
            user.vote_streak = streak
            user.streak_day = today
            db.commit()

        if streak > previous:
            logger.info("Streak for user %s: %s -> %s", user_id, previous, streak)
        else:
            logger.info("Streak for user %s reset to %s", user_id, streak)

        try:
            self.cache.set(user_id, streak)
        except redis.RedisError:
            logger.warning("Could not refresh streak cache for user %s", user_id)
        return streak

    def reset(self, user_id: str) -> None:
        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is not None:
                user.vote_streak = 0
                user.streak_day = None
                db.commit()
        try:
            self.cache.invalidate(user_id)
        except redis.RedisError:
            logger.warning("Could not clear streak cache for user %s", user_id)

    def details(self, user_id: str) -> dict:
        with self.session_factory() as db:
            total_votes, last_vote = db.execute(
                select(func.count(Vote.id), func.max(Vote.created_at)).where(Vote.voter_id == user_id)
            ).one()
        voted_days = self._voted_days(user_id)
        run = consecutive_days(voted_days, max(voted_days)) if voted_days else []
        return {
            "currentStreak": self.get_streak(user_id),
            "maxStreak": longest_run(voted_days),
            "lastVoteDate": last_vote.isoformat() if last_vote else None,
            "totalVotes": total_votes,
            "consecutiveDays": [day.isoformat() for day in reversed(run)],
        }

    def _next_streak(self, db, user_id: str, user: Optional[User], today: date) -> int:
        if user is not None and user.streak_day == today:
            return user.vote_streak
        if user is not None and self._voted_on(db, user_id, today - timedelta(days=1)):
            return user.vote_streak + 1
        return 1

    def _voted_on(self, db, user_id: str, day: date) -> bool:
        start, end = day_bounds(day)
        found = db.execute(
            select(Vote.id)
            .where(Vote.voter_id == user_id, Vote.created_at >= start, Vote.created_at < end)
            .limit(1)
        ).first()
        return found is not None

    def _project_from_ledger(self, user_id: str, today: date) -> int:
        voted_days = self._voted_days(user_id, since=today - timedelta(days=LOOKBACK_DAYS))
        if today in voted_days:
            return len(consecutive_days(voted_days, today))
        yesterday = today - timedelta(days=1)
        if yesterday in voted_days:
            return len(consecutive_days(voted_days, yesterday)) + 1
        return 1

    def _voted_days(self, user_id: str, since: Optional[date] = None) -> set:
        query = select(Vote.created_at).where(Vote.voter_id == user_id)
        if since is not None:
            query = query.where(Vote.created_at >= day_start(since))
        with self.session_factory() as db:
            timestamps = db.execute(query).scalars().all()
        return {local_day(created_at) for created_at in timestamps}
