import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from vendorvote.config import LOG_LEVEL
from vendorvote.database import Base, engine, get_db
from vendorvote.errors import DistributionError
from vendorvote.metrics import MetricsMiddleware, db_pool_checked_out, db_pool_size, get_metrics_response
from vendorvote.models import Vote
from vendorvote.redis_client import redis_client
from vendorvote.voting import VoteData, VotingService, get_user_vote_history, get_vendor_vote_stats

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class GpsLocation(BaseModel):
    lat: float
    lng: float


class VoteRequest(BaseModel):
    userId: str
    vendorId: str
    voteType: Literal["regular", "verified"]
    photoUrl: Optional[str] = None
    gpsLocation: Optional[GpsLocation] = None
    verificationConfidence: Optional[float] = Field(default=None, ge=0, le=1)


class WalletConnectRequest(BaseModel):
    userId: str
    walletAddress: str = Field(pattern=r"^0x[0-9a-fA-F]{40}$")


class RetryFailedRequest(BaseModel):
    userId: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Vendor Vote Rewards",
    description="Vote admission, token rewards, streaks and wallet distribution",
    lifespan=lifespan
)

app.add_middleware(MetricsMiddleware)

voting_service = VotingService()


def update_pool_metrics():
    pool = engine.pool
    db_pool_size.set(pool.size())
    db_pool_checked_out.set(pool.checkedout())


@app.post("/votes")
async def submit_vote(vote: VoteRequest):
    result = voting_service.register_vote(VoteData(
        user_id=vote.userId,
        vendor_id=vote.vendorId,
        vote_type=vote.voteType,
        photo_url=vote.photoUrl,
        gps_location=vote.gpsLocation.model_dump() if vote.gpsLocation else None,
        verification_confidence=vote.verificationConfidence,
    ))

    update_pool_metrics()

    if not result.success:
        return JSONResponse(status_code=400, content=result.to_dict())
    return {**result.to_dict(), "message": "Vote registered successfully!"}


@app.get("/votes")
async def get_votes(
    userId: Optional[str] = None,
    vendorId: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    if userId:
        return {"success": True, "data": get_user_vote_history(db, userId, limit)}

    if vendorId:
        stats = get_vendor_vote_stats(db, vendorId)
        if stats is None:
            raise HTTPException(status_code=404, detail="Vendor not found")
        return {"success": True, "data": stats}

    raise HTTPException(status_code=400, detail="Must provide userId or vendorId parameter")


@app.post("/wallet/connect")
async def connect_wallet(request: WalletConnectRequest):
    try:
        summary = voting_service.distributor.process_pending_for_user(request.userId, request.walletAddress)
    except LookupError:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, **summary.to_dict()}


@app.post("/wallet/retry-failed")
async def retry_failed(request: RetryFailedRequest):
    try:
        summary = voting_service.distributor.retry_failed(request.userId)
    except LookupError:
        raise HTTPException(status_code=404, detail="User not found")
    except DistributionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if summary.tokens_distributed > 0:
        message = f"Successfully retried and distributed {summary.tokens_distributed} tokens!"
    else:
        message = "No failed distributions could be retried successfully."
    return {"success": True, **summary.to_dict(), "message": message}


@app.get("/wallet/status")
async def wallet_status(userId: str):
    return {"success": True, "data": voting_service.distributor.status(userId)}


@app.get("/users/{user_id}/streak")
async def get_streak(user_id: str):
    details = voting_service.streaks.details(user_id)
    details["streak"] = voting_service.streaks.cached_streak(user_id)
    return {"success": True, "data": details}


@app.post("/users/{user_id}/streak/reset")
async def reset_streak(user_id: str):
    voting_service.streaks.reset(user_id)
    return {"success": True}


@app.get("/users/{user_id}/balance")
async def get_balance(user_id: str):
    return {"success": True, "data": {"balance": voting_service.get_balance(user_id)}}


@app.get("/metrics")
async def metrics():
    update_pool_metrics()
    return get_metrics_response()


@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    try:
        redis_client.ping()
    except Exception:
        raise HTTPException(status_code=503, detail="Redis not available")

    try:
        with engine.connect() as conn:
            conn.execute(select(Vote.id).limit(1))
    except Exception:
        raise HTTPException(status_code=503, detail="PostgreSQL not available")

    return {"status": "ready"}
