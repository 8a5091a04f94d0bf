"""Vote admission and the vote ledger.

A vote is checked against the vendor directory, the vote-limit counters and
the duplicate-evidence filter, priced by the reward calculator and written to
the ledger. Everything after that commit (proof row, balance, streak,
counters, distribution) is best effort: a failure there is logged and the
vote still stands.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import NamedTuple, Optional

import redis
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vendorvote.database import SessionLocal
from vendorvote.distribution import DistributionSink, TokenDistributionManager
from vendorvote.errors import PersistenceError, VoteRejected
from vendorvote.fraud import DUPLICATE_PHOTO, DuplicateEvidenceFilter, photo_hash
from vendorvote.metrics import tokens_awarded_total, votes_total
from vendorvote.models import (
    DISTRIBUTION_PENDING,
    PROOF_PENDING,
    VOTE_KINDS,
    VOTE_VERIFIED,
    Proof,
    User,
    Vendor,
    Vote,
    Zone,
)
from vendorvote.redis_client import (
    BalanceCache,
    CounterStore,
    StreakCache,
    redis_client,
    vendor_day_key,
    weekly_key,
)
from vendorvote.rewards import RewardCalculator, TokenCalculation, VotePolicy
from vendorvote.streak import StreakTracker
from vendorvote.windows import day_key, local_day, utcnow, week_key

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8


@dataclass
class VoteData:
    user_id: str
    vendor_id: str
    vote_type: str
    photo_url: Optional[str] = None
    gps_location: Optional[dict] = None
    verification_confidence: Optional[float] = None


@dataclass
class VoteResult:
    success: bool
    vote_id: Optional[str] = None
    tokens_earned: int = 0
    new_balance: int = 0
    streak_bonus: int = 0
    territory_bonus: int = 0
    error: Optional[str] = None
    warnings: list = field(default_factory=list)

    def to_dict(self) -> dict:
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "voteId": self.vote_id,
            "tokensEarned": self.tokens_earned,
            "newBalance": self.new_balance,
            "streakBonus": self.streak_bonus,
            "territoryBonus": self.territory_bonus,
        }


class VoteLimit(NamedTuple):
    key: str
    ttl: int
    enabled: bool
    limit: int
    message: str


class VotingService:
    def __init__(
        self,
        session_factory=SessionLocal,
        client=None,
        sink: Optional[DistributionSink] = None,
        policy: Optional[VotePolicy] = None,
        clock=utcnow,
    ):
        client = client if client is not None else redis_client
        self.session_factory = session_factory
        self.policy = policy or VotePolicy()
        self.clock = clock
        self.counters = CounterStore(client)
        self.balances = BalanceCache(client)
        self.evidence = DuplicateEvidenceFilter(client)
        self.streaks = StreakTracker(session_factory, StreakCache(client), clock)
        self.calculator = RewardCalculator(self.streaks, session_factory, self.policy)
        self.distributor = TokenDistributionManager(session_factory, sink, clock)

    def register_vote(self, data: VoteData) -> VoteResult:
        try:
            result = self._register(data)
        except VoteRejected as e:
            logger.info("Vote by %s for %s rejected: %s", data.user_id, data.vendor_id, e.reason)
            votes_total.labels(kind=data.vote_type, outcome=e.code).inc()
            return VoteResult(success=False, error=e.reason)
        except PersistenceError:
            logger.exception("Vote by %s for %s could not be recorded", data.user_id, data.vendor_id)
            votes_total.labels(kind=data.vote_type, outcome="error").inc()
            return VoteResult(success=False, error="Failed to record vote")
        except Exception:
            logger.exception("Error in register_vote")
            votes_total.labels(kind=data.vote_type, outcome="error").inc()
            return VoteResult(success=False, error="Internal server error")

        votes_total.labels(kind=data.vote_type, outcome="accepted").inc()
        tokens_awarded_total.labels(kind=data.vote_type).inc(result.tokens_earned)
        return result

    def _register(self, data: VoteData) -> VoteResult:
        now = self.clock()
        today = local_day(now)

        self._validate(data)
        self._check_vote_limits(data, today)

        content_hash = None
        if data.vote_type == VOTE_VERIFIED:
            content_hash = photo_hash(data.photo_url)
            if self.evidence.is_duplicate(content_hash):
                self.evidence.track_suspicious_activity(
                    data.user_id, DUPLICATE_PHOTO, vendorId=data.vendor_id, photoHash=content_hash
                )
                raise VoteRejected("Photo has been used before. Please take a new photo.", code="duplicate")

        try:
            calculation = self.calculator.calculate(data.user_id, data.vendor_id, data.vote_type)
            if self.policy.weekly_cap_enabled and calculation.exceeds_weekly_cap():
                raise VoteRejected("Weekly token earning limit reached", code="cap_exceeded")

            vote_id = self._write_ledger(data, calculation, now)
        except (PersistenceError, VoteRejected, SQLAlchemyError):
            # Nothing was recorded, so the same photo may be submitted again
            if content_hash is not None:
                self._release_evidence(content_hash)
            raise

        logger.info(
            "Recorded %s vote %s by %s for %s: %s tokens",
            data.vote_type, vote_id, data.user_id, data.vendor_id, calculation.total_tokens,
        )

        result = VoteResult(
            success=True,
            vote_id=vote_id,
            tokens_earned=calculation.total_tokens,
            streak_bonus=calculation.streak_bonus,
            territory_bonus=calculation.territory_bonus,
        )

        if content_hash is not None:
            try:
                self._record_proof(vote_id, data, content_hash, now)
            except SQLAlchemyError:
                logger.warning("Proof for vote %s was not recorded", vote_id, exc_info=True)
                result.warnings.append("proof")

        result.new_balance = self._credit_balance(data.user_id, calculation.total_tokens, result)

        try:
            self.streaks.advance_on_vote(data.user_id)
        except (SQLAlchemyError, LookupError):
            logger.warning("Streak for user %s was not advanced after vote %s", data.user_id, vote_id, exc_info=True)
            result.warnings.append("streak")

        self._count_vote(data, today)

        try:
            self.distributor.distribute_vote(vote_id)
        except (SQLAlchemyError, LookupError):
            logger.warning("Distribution hand-off failed for vote %s, left pending", vote_id, exc_info=True)
            result.warnings.append("distribution")

        return result

    def _validate(self, data: VoteData) -> None:
        if data.vote_type not in VOTE_KINDS:
            raise VoteRejected('Invalid vote type. Must be "regular" or "verified"', code="invalid")
        if data.vote_type == VOTE_VERIFIED and not data.photo_url:
            raise VoteRejected("Photo URL is required for verified votes", code="invalid")

        with self.session_factory() as db:
            vendor = db.get(Vendor, data.vendor_id)
        if vendor is None:
            raise VoteRejected("Vendor not found", code="vendor_not_found")

    def _release_evidence(self, content_hash: str) -> None:
        try:
            self.evidence.release(content_hash)
        except redis.RedisError:
            logger.warning("Could not release photo hash %s", content_hash)

    def _vote_limits(self, data: VoteData, today: date) -> list[VoteLimit]:
        policy = self.policy
        return [
            VoteLimit(
                vendor_day_key(data.user_id, data.vendor_id, day_key(today)),
                CounterStore.DAILY_TTL,
                policy.vendor_daily_limit_enabled,
                policy.vendor_daily_vote_limit,
                f"You have already voted {policy.vendor_daily_vote_limit} times for this vendor today. "
                "Come back tomorrow to vote again!",
            ),
            VoteLimit(
                weekly_key(data.user_id, week_key(today)),
                CounterStore.WEEKLY_TTL,
                policy.weekly_vote_limit_enabled,
                policy.weekly_vote_limit,
                "Weekly vote limit reached",
            ),
        ]

    def _check_vote_limits(self, data: VoteData, today: date) -> None:
        # Enabled limits count up front; Redis errors here fail the vote
        for limit in self._vote_limits(data, today):
            if not limit.enabled:
                continue
            if self.counters.increment(limit.key, limit.ttl) > limit.limit:
                raise VoteRejected(limit.message, code="rate_limited")

    def _count_vote(self, data: VoteData, today: date) -> None:
        # Disabled limits are still counted for analytics, and fail open
        for limit in self._vote_limits(data, today):
            if limit.enabled:
                continue
            try:
                self.counters.increment(limit.key, limit.ttl)
            except redis.RedisError:
                logger.warning("Could not count vote for %s", limit.key)

    def _write_ledger(self, data: VoteData, calculation: TokenCalculation, now: datetime) -> str:
        vote_id = str(uuid.uuid4())
        try:
            with self.session_factory() as db:
                if db.get(User, data.user_id) is None:
                    db.add(User(id=data.user_id, battle_tokens=0, vote_streak=0, created_at=now, updated_at=now))
                    db.flush()
                db.add(Vote(
                    id=vote_id,
                    voter_id=data.user_id,
                    vendor_id=data.vendor_id,
                    is_verified=data.vote_type == VOTE_VERIFIED,
                    token_reward=calculation.total_tokens,
                    created_at=now,
                    distribution_status=DISTRIBUTION_PENDING,
                ))
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e
        return vote_id

    def _record_proof(self, vote_id: str, data: VoteData, content_hash: str, now: datetime) -> None:
        location = None
        if data.gps_location:
            location = f"({data.gps_location['lat']},{data.gps_location['lng']})"
        confidence = data.verification_confidence
        if confidence is None:
            confidence = DEFAULT_CONFIDENCE

        proof_id = str(uuid.uuid4())
        with self.session_factory() as db:
            db.add(Proof(
                id=proof_id,
                vote_id=vote_id,
                voter_id=data.user_id,
                vendor_id=data.vendor_id,
                photo_hash=content_hash,
                photo_url=data.photo_url,
                gps_location=location,
                verification_confidence=confidence,
                status=PROOF_PENDING,
                metadata_={"device": "web", "timestamp": now.isoformat(), "location_accuracy": "medium"},
                created_at=now,
            ))
            db.execute(update(Vote).where(Vote.id == vote_id).values(proof_id=proof_id))
            db.commit()

    def _credit_balance(self, user_id: str, amount: int, result: VoteResult) -> int:
        try:
            with self.session_factory() as db:
                db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(battle_tokens=User.battle_tokens + amount, updated_at=self.clock())
                )
                balance = db.execute(select(User.battle_tokens).where(User.id == user_id)).scalar_one()
                db.commit()
        except SQLAlchemyError:
            logger.warning("Balance for user %s was not credited with %s tokens", user_id, amount, exc_info=True)
            result.warnings.append("balance")
            try:
                last_known = self.get_balance(user_id)
            except SQLAlchemyError:
                logger.warning("Last known balance for user %s unavailable", user_id)
                last_known = 0
            try:
                self.balances.invalidate(user_id)
            except redis.RedisError:
                logger.warning("Could not clear balance cache for user %s", user_id)
            return last_known

        try:
            self.balances.set(user_id, balance)
        except redis.RedisError:
            logger.warning("Could not refresh balance cache for user %s", user_id)
        return balance

    def get_balance(self, user_id: str) -> int:
        try:
            cached = self.balances.get(user_id)
        except redis.RedisError:
            logger.warning("Balance cache unavailable for user %s", user_id)
            cached = None
        if cached is not None:
            return cached

        with self.session_factory() as db:
            balance = db.execute(select(User.battle_tokens).where(User.id == user_id)).scalar_one_or_none()
        if balance is None:
            return 0
        try:
            self.balances.set(user_id, balance)
        except redis.RedisError:
            logger.warning("Could not repopulate balance cache for user %s", user_id)
        return balance


def get_user_vote_history(db: Session, user_id: str, limit: int = 50) -> list[dict]:
    rows = db.execute(
        select(Vote, Vendor, Zone)
        .join(Vendor, Vote.vendor_id == Vendor.id)
        .outerjoin(Zone, Vendor.zone_id == Zone.id)
        .where(Vote.voter_id == user_id)
        .order_by(Vote.created_at.desc())
        .limit(limit)
    ).all()
    return [
        {
            "id": vote.id,
            "vendorId": vote.vendor_id,
            "voteType": vote.kind,
            "tokenReward": vote.token_reward,
            "createdAt": vote.created_at.isoformat(),
            "distributionStatus": vote.distribution_status,
            "transactionHash": vote.transaction_hash,
            "vendor": {
                "id": vendor.id,
                "name": vendor.name,
                "category": vendor.category,
                "imageUrl": vendor.image_url,
            },
            "zone": {"id": zone.id, "name": zone.name, "color": zone.color} if zone is not None else None,
        }
        for vote, vendor, zone in rows
    ]


def get_vendor_vote_stats(db: Session, vendor_id: str) -> Optional[dict]:
    if db.get(Vendor, vendor_id) is None:
        return None

    total_votes, verified_votes, total_tokens = db.execute(
        select(
            func.count(Vote.id),
            func.coalesce(func.sum(case((Vote.is_verified, 1), else_=0)), 0),
            func.coalesce(func.sum(Vote.token_reward), 0),
        ).where(Vote.vendor_id == vendor_id)
    ).one()
    return {
        "totalVotes": total_votes,
        "verifiedVotes": int(verified_votes),
        "totalTokens": int(total_tokens),
        "verificationRate": (verified_votes / total_votes) * 100 if total_votes else 0,
    }
