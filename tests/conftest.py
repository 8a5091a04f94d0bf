from datetime import datetime, timedelta

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vendorvote.database import Base
from vendorvote.distribution import DistributionSink
from vendorvote.errors import DistributionError
from vendorvote.models import Vendor, Zone
from vendorvote.rewards import VotePolicy
from vendorvote.voting import VoteData, VotingService

VENDOR_V = "772cdbda-2cbb-4c67-a73a-3656bf02a4c1"
VENDOR_W = "111f3776-b7c4-4ee0-80e1-5ca89e8ea9d0"
ZONE_ID = "49298ccd-5b91-4a41-839d-98c3b2cc504b"
WALLET = "0x" + "ab" * 20


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingSink(DistributionSink):
    def __init__(self):
        self.transfers = []

    def transfer(self, wallet_address, amount, vote_id):
        self.transfers.append((wallet_address, amount, vote_id))
        return f"0xtx{len(self.transfers)}"


class FailingSink(DistributionSink):
    def __init__(self, message="execution reverted"):
        self.message = message
        self.attempts = 0

    def transfer(self, wallet_address, amount, vote_id):
        self.attempts += 1
        raise DistributionError(self.message)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeStrictRedis(decode_responses=True)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    with factory() as db:
        db.add(Zone(id=ZONE_ID, name="Centro", color="#ff6b35"))
        db.add(Vendor(id=VENDOR_V, name="Pupusas María", category="pupusas", zone_id=ZONE_ID))
        db.add(Vendor(id=VENDOR_W, name="Tacos El Rey", category="tacos", zone_id=None))
        db.commit()
    return factory


@pytest.fixture
def clock():
    # Tuesday, midday UTC
    return FakeClock(datetime(2026, 3, 10, 12, 0, 0))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def policy():
    return VotePolicy(
        weekly_cap_enabled=False,
        vendor_daily_limit_enabled=False,
        weekly_vote_limit_enabled=False,
    )


@pytest.fixture
def service(session_factory, fake_redis, sink, policy, clock):
    return VotingService(session_factory, fake_redis, sink=sink, policy=policy, clock=clock)


def regular_vote(user_id="1001", vendor_id=VENDOR_V):
    return VoteData(user_id=user_id, vendor_id=vendor_id, vote_type="regular")


def verified_vote(photo_url, user_id="1001", vendor_id=VENDOR_V, **kwargs):
    return VoteData(user_id=user_id, vendor_id=vendor_id, vote_type="verified", photo_url=photo_url, **kwargs)
