"""Delivery of earned tokens from the internal ledger to external wallets.

Distribution state lives on the vote row: ``pending`` until a transfer is
attempted, then ``distributed`` with a transaction reference or ``failed``
with the error text. The internal balance is never touched here.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import requests
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from vendorvote import config
from vendorvote.database import SessionLocal
from vendorvote.errors import DistributionError
from vendorvote.metrics import token_distributions_total
from vendorvote.models import (
    DISTRIBUTION_DISTRIBUTED,
    DISTRIBUTION_FAILED,
    DISTRIBUTION_PENDING,
    DISTRIBUTION_PROCESSING,
    User,
    Vote,
)
from vendorvote.windows import utcnow

logger = logging.getLogger(__name__)


class DistributionSink(ABC):
    @abstractmethod
    def transfer(self, wallet_address: str, amount: int, vote_id: str) -> str:
        """Send ``amount`` tokens and return the transaction reference.

        Raises DistributionError when the transfer does not go through.
        """


class SimulatedSink(DistributionSink):
    def transfer(self, wallet_address: str, amount: int, vote_id: str) -> str:
        logger.info("Simulating distribution of %s tokens to %s", amount, wallet_address)
        return f"simulated_{uuid.uuid4().hex}"


class HttpDistributionSink(DistributionSink):
    """Posts transfers to a distributor service that holds the signing key."""

    def __init__(self, url: str = config.DISTRIBUTOR_URL, timeout: float = config.DISTRIBUTOR_TIMEOUT, session=None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def transfer(self, wallet_address: str, amount: int, vote_id: str) -> str:
        payload = {"to": wallet_address, "amount": amount, "reference": vote_id}
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise DistributionError(f"Distributor request failed: {e}") from e

        if data.get("error"):
            raise DistributionError(f"Distributor error: {data['error']}")
        tx_hash = data.get("transactionHash")
        if not tx_hash:
            raise DistributionError("Distributor response has no transaction hash")
        return tx_hash


def build_sink(kind: str = config.DISTRIBUTION_SINK) -> DistributionSink:
    if kind == "http":
        return HttpDistributionSink()
    if kind == "simulated":
        return SimulatedSink()
    raise ValueError(f"Unknown distribution sink: {kind}")


@dataclass
class DistributionOutcome:
    status: str
    tokens_distributed: int = 0
    transaction_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DistributionSummary:
    tokens_distributed: int = 0
    distributed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0

    def to_dict(self) -> dict:
        return {
            "tokensDistributed": self.tokens_distributed,
            "distributedCount": self.distributed_count,
            "failedCount": self.failed_count,
            "skippedCount": self.skipped_count,
        }


class TokenDistributionManager:
    def __init__(self, session_factory=SessionLocal, sink: Optional[DistributionSink] = None, clock=utcnow):
        self.session_factory = session_factory
        self.sink = sink if sink is not None else build_sink()
        self.clock = clock

    def distribute_vote(self, vote_id: str) -> DistributionOutcome:
        """Push a freshly recorded vote's reward if its voter has a wallet."""
        with self.session_factory() as db:
            vote = db.get(Vote, vote_id)
            if vote is None:
                raise LookupError(f"Unknown vote {vote_id}")
            user = db.get(User, vote.voter_id)
            wallet = user.wallet_address if user is not None else None

        if not wallet:
            logger.info("User has no wallet, vote %s stays pending", vote_id)
            return DistributionOutcome(status=DISTRIBUTION_PENDING)
        return self._attempt(vote_id, wallet, expected_status=DISTRIBUTION_PENDING)

    def process_pending_for_user(self, user_id: str, wallet_address: str) -> DistributionSummary:
        """Record the user's wallet and deliver every pending vote, oldest first."""
        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise LookupError(f"Unknown user {user_id}")
            user.wallet_address = wallet_address
            db.commit()

        vote_ids = self._vote_ids(user_id, DISTRIBUTION_PENDING)
        logger.info("Processing %s pending distributions for user %s", len(vote_ids), user_id)
        summary = self._run(vote_ids, wallet_address, DISTRIBUTION_PENDING)
        logger.info(
            "Processed pending distributions for user %s: %s tokens distributed, %s failed",
            user_id, summary.tokens_distributed, summary.failed_count,
        )
        return summary

    def retry_failed(self, user_id: str) -> DistributionSummary:
        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise LookupError(f"Unknown user {user_id}")
            wallet_address = user.wallet_address
        if not wallet_address:
            raise DistributionError("No wallet address found for user")

        vote_ids = self._vote_ids(user_id, DISTRIBUTION_FAILED)
        logger.info("Retrying %s failed distributions for user %s", len(vote_ids), user_id)
        summary = self._run(vote_ids, wallet_address, DISTRIBUTION_FAILED)
        logger.info(
            "Retried failed distributions for user %s: %s tokens distributed, %s still failed",
            user_id, summary.tokens_distributed, summary.failed_count,
        )
        return summary

    def status(self, user_id: str) -> dict:
        with self.session_factory() as db:
            rows = db.execute(
                select(Vote.distribution_status, func.count(Vote.id), func.coalesce(func.sum(Vote.token_reward), 0))
                .where(
                    Vote.voter_id == user_id,
                    Vote.distribution_status.in_([DISTRIBUTION_PENDING, DISTRIBUTION_FAILED]),
                )
                .group_by(Vote.distribution_status)
            ).all()
        totals = {status: (count, int(tokens)) for status, count, tokens in rows}
        pending_count, pending_tokens = totals.get(DISTRIBUTION_PENDING, (0, 0))
        failed_count, failed_tokens = totals.get(DISTRIBUTION_FAILED, (0, 0))
        return {
            "hasPendingTokens": pending_count > 0,
            "hasFailedTokens": failed_count > 0,
            "pendingCount": pending_count,
            "failedCount": failed_count,
            "totalPendingTokens": pending_tokens,
            "totalFailedTokens": failed_tokens,
        }

    def _run(self, vote_ids: list[str], wallet_address: str, expected_status: str) -> DistributionSummary:
        summary = DistributionSummary()
        for vote_id in vote_ids:
            try:
                outcome = self._attempt(vote_id, wallet_address, expected_status)
            except SQLAlchemyError:
                logger.exception("Could not record distribution for vote %s", vote_id)
                summary.failed_count += 1
                continue

            if outcome.status == DISTRIBUTION_DISTRIBUTED:
                summary.tokens_distributed += outcome.tokens_distributed
                summary.distributed_count += 1
            elif outcome.status == DISTRIBUTION_FAILED:
                summary.failed_count += 1
            else:
                summary.skipped_count += 1
        return summary

    def _attempt(self, vote_id: str, wallet_address: str, expected_status: str) -> DistributionOutcome:
        with self.session_factory() as db:
            vote = db.get(Vote, vote_id)
            if vote is None or vote.distribution_status != expected_status:
                current = vote.distribution_status if vote is not None else None
                logger.info("Skipping vote %s, distribution status is %s", vote_id, current)
                return DistributionOutcome(status=current or "missing")
            amount = vote.token_reward

            # Claim the row so an overlapping run cannot send the same reward.
            # A vote left in processing is never picked up again automatically.
            claimed = db.execute(
                update(Vote)
                .where(Vote.id == vote_id, Vote.distribution_status == expected_status)
                .values(distribution_status=DISTRIBUTION_PROCESSING)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
            if claimed != 1:
                logger.info("Vote %s was claimed by another distribution run", vote_id)
                return DistributionOutcome(status=DISTRIBUTION_PROCESSING)

            try:
                tx_hash = self.sink.transfer(wallet_address, amount, vote_id)
            except DistributionError as e:
                self._record(db, vote_id, distribution_status=DISTRIBUTION_FAILED, distribution_error=str(e))
                token_distributions_total.labels(status=DISTRIBUTION_FAILED).inc()
                logger.warning("Distribution failed for vote %s: %s", vote_id, e)
                return DistributionOutcome(status=DISTRIBUTION_FAILED, error=str(e))

            self._record(
                db,
                vote_id,
                distribution_status=DISTRIBUTION_DISTRIBUTED,
                transaction_hash=tx_hash,
                distribution_error=None,
                distributed_at=self.clock(),
            )
            token_distributions_total.labels(status=DISTRIBUTION_DISTRIBUTED).inc()
            logger.info("Distributed %s tokens for vote %s (%s)", amount, vote_id, tx_hash)
            return DistributionOutcome(
                status=DISTRIBUTION_DISTRIBUTED,
                tokens_distributed=amount,
                transaction_hash=tx_hash,
            )

    def _record(self, db, vote_id: str, **values) -> None:
        db.execute(
            update(Vote)
            .where(Vote.id == vote_id, Vote.distribution_status == DISTRIBUTION_PROCESSING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def _vote_ids(self, user_id: str, status: str) -> list[str]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Vote.id)
                    .where(Vote.voter_id == user_id, Vote.distribution_status == status)
                    .order_by(Vote.created_at.asc())
                ).scalars()
            )
