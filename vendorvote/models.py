from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from vendorvote.database import Base

VOTE_REGULAR = "regular"
VOTE_VERIFIED = "verified"
VOTE_KINDS = (VOTE_REGULAR, VOTE_VERIFIED)

DISTRIBUTION_PENDING = "pending"
DISTRIBUTION_DISTRIBUTED = "distributed"
DISTRIBUTION_FAILED = "failed"
# Claimed by a distribution run; the transfer outcome is not recorded yet
DISTRIBUTION_PROCESSING = "processing"

PROOF_PENDING = "pending"


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    battle_tokens = Column(Integer, nullable=False, default=0)
    vote_streak = Column(Integer, nullable=False, default=0)
    # Calendar day the streak was last advanced; guards once-per-day advancement
    streak_day = Column(Date, nullable=True)
    wallet_address = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Zone(Base):
    __tablename__ = "zones"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    color = Column(String(16), nullable=True)


class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    category = Column(String(64), nullable=True)
    image_url = Column(Text, nullable=True)
    zone_id = Column(String(64), ForeignKey("zones.id"), nullable=True)


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (
        Index("ix_votes_voter_created", "voter_id", "created_at"),
        Index("ix_votes_voter_vendor_created", "voter_id", "vendor_id", "created_at"),
    )

    id = Column(String(36), primary_key=True)
    voter_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    vendor_id = Column(String(64), ForeignKey("vendors.id"), nullable=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    token_reward = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    proof_id = Column(String(36), nullable=True)
    distribution_status = Column(String(16), nullable=False, default=DISTRIBUTION_PENDING, index=True)
    transaction_hash = Column(String(128), nullable=True)
    distribution_error = Column(Text, nullable=True)
    distributed_at = Column(DateTime, nullable=True)

    @property
    def kind(self) -> str:
        return VOTE_VERIFIED if self.is_verified else VOTE_REGULAR


class Proof(Base):
    __tablename__ = "proofs"

    id = Column(String(36), primary_key=True)
    vote_id = Column(String(36), ForeignKey("votes.id"), nullable=False)
    voter_id = Column(String(64), nullable=False)
    vendor_id = Column(String(64), nullable=False)
    photo_hash = Column(String(64), nullable=False, index=True)
    photo_url = Column(Text, nullable=False)
    gps_location = Column(String(64), nullable=True)
    verification_confidence = Column(Float, nullable=False, default=0.8)
    status = Column(String(16), nullable=False, default=PROOF_PENDING)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
