#!/usr/bin/env python3
"""
Report users with pending token distributions and deliver the ones that
already have a wallet on file.

Users without a wallet are listed only; their tokens move once they connect
one through POST /wallet/connect.
"""

import sys

from sqlalchemy import func, select

from vendorvote.database import SessionLocal
from vendorvote.models import DISTRIBUTION_PENDING, User, Vote
from vendorvote.voting import VotingService


def pending_by_user():
    with SessionLocal() as db:
        return db.execute(
            select(User.id, User.wallet_address, func.count(Vote.id), func.sum(Vote.token_reward))
            .join(Vote, Vote.voter_id == User.id)
            .where(Vote.distribution_status == DISTRIBUTION_PENDING)
            .group_by(User.id, User.wallet_address)
            .order_by(User.id)
        ).all()


def process_pending_distributions():
    rows = pending_by_user()
    if not rows:
        print("No pending distributions found")
        return

    print(f"Found pending distributions for {len(rows)} users")
    print("=" * 80)

    distributor = VotingService().distributor
    for user_id, wallet, vote_count, tokens in rows:
        print(f"User {user_id}: {vote_count} pending votes, {tokens} tokens")
        if not wallet:
            print("   No wallet connected, skipping")
            continue

        summary = distributor.process_pending_for_user(user_id, wallet)
        print(
            f"   Distributed {summary.tokens_distributed} tokens "
            f"({summary.distributed_count} votes, {summary.failed_count} failed)"
        )


if __name__ == "__main__":
    try:
        process_pending_distributions()
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
