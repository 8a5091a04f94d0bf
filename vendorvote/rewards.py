"""Token reward sizing for a single vote.

Rules:
- base: 10 tokens for a regular vote, 30 for a verified one
- a repeat vote for the same vendor on the same calendar day earns half the base
- streak bonus: +1 per consecutive voting day, capped at +10; a streak only
  pays once it spans at least two days
- territory bonus: reserved, always 0
- weekly cap: 200 tokens, computed on every vote, enforced only when enabled
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, select

from vendorvote import config
from vendorvote.database import SessionLocal
from vendorvote.models import VOTE_REGULAR, VOTE_VERIFIED, Vote
from vendorvote.streak import StreakTracker
from vendorvote.windows import day_bounds, day_start, week_start

logger = logging.getLogger(__name__)

BASE_TOKENS = {
    VOTE_REGULAR: 10,
    VOTE_VERIFIED: 30,
}
MAX_STREAK_BONUS = 10
MIN_STREAK_FOR_BONUS = 2


@dataclass(frozen=True)
class VotePolicy:
    """Switchable admission and earning limits.

    Each limit keeps its counter or sum wired in; the flag only decides
    whether crossing it turns a vote away.
    """

    weekly_cap_enabled: bool = config.WEEKLY_CAP_ENABLED
    weekly_token_cap: int = config.WEEKLY_TOKEN_CAP
    vendor_daily_limit_enabled: bool = config.VENDOR_DAILY_LIMIT_ENABLED
    vendor_daily_vote_limit: int = config.VENDOR_DAILY_VOTE_LIMIT
    weekly_vote_limit_enabled: bool = config.WEEKLY_VOTE_LIMIT_ENABLED
    weekly_vote_limit: int = config.WEEKLY_VOTE_LIMIT


@dataclass(frozen=True)
class TokenCalculation:
    base_tokens: int
    streak_bonus: int
    territory_bonus: int
    total_tokens: int
    weekly_cap_remaining: int
    streak: int
    first_vote_of_day: bool

    def exceeds_weekly_cap(self) -> bool:
        return self.total_tokens > self.weekly_cap_remaining


def streak_bonus(streak: int) -> int:
    if streak < MIN_STREAK_FOR_BONUS:
        return 0
    return min(streak, MAX_STREAK_BONUS)


def calculate_reward(
    vote_kind: str,
    first_vote_of_day: bool,
    streak: int,
    weekly_tokens_earned: int = 0,
    policy: Optional[VotePolicy] = None,
    territory_bonus: int = 0,
) -> TokenCalculation:
    policy = policy or VotePolicy()
    base = BASE_TOKENS[vote_kind]
    if not first_vote_of_day:
        base = base // 2

    bonus = streak_bonus(streak)
    total = base + bonus + territory_bonus

    return TokenCalculation(
        base_tokens=base,
        streak_bonus=bonus,
        territory_bonus=territory_bonus,
        total_tokens=total,
        weekly_cap_remaining=max(0, policy.weekly_token_cap - weekly_tokens_earned),
        streak=streak,
        first_vote_of_day=first_vote_of_day,
    )


class RewardCalculator:
    def __init__(self, streaks: StreakTracker, session_factory=SessionLocal, policy: Optional[VotePolicy] = None):
        self.streaks = streaks
        self.session_factory = session_factory
        self.policy = policy or VotePolicy()

    def calculate(self, user_id: str, vendor_id: str, vote_kind: str) -> TokenCalculation:
        first_vote = self.is_first_vote_of_day(user_id, vendor_id)
        streak = self.streaks.projected_streak(user_id)
        weekly_earned = self.weekly_tokens_earned(user_id)
        calculation = calculate_reward(vote_kind, first_vote, streak, weekly_earned, self.policy)
        logger.debug(
            "Reward for %s vote by %s on %s: base=%s streak_bonus=%s total=%s",
            vote_kind, user_id, vendor_id,
            calculation.base_tokens, calculation.streak_bonus, calculation.total_tokens,
        )
        return calculation

    def is_first_vote_of_day(self, user_id: str, vendor_id: str) -> bool:
        start, end = day_bounds(self.streaks.today())
        with self.session_factory() as db:
            found = db.execute(
                select(Vote.id)
                .where(
                    Vote.voter_id == user_id,
                    Vote.vendor_id == vendor_id,
                    Vote.created_at >= start,
                    Vote.created_at < end,
                )
                .limit(1)
            ).first()
        return found is None

    def weekly_tokens_earned(self, user_id: str) -> int:
        monday = week_start(self.streaks.today())
        with self.session_factory() as db:
            earned = db.execute(
                select(func.coalesce(func.sum(Vote.token_reward), 0)).where(
                    Vote.voter_id == user_id,
                    Vote.created_at >= day_start(monday),
                    Vote.created_at < day_start(monday + timedelta(days=7)),
                )
            ).scalar_one()
        return int(earned)
