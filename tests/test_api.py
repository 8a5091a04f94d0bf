from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import VENDOR_V, VENDOR_W, WALLET


@pytest.fixture
def mock_db():
    mock_engine = MagicMock()
    mock_conn = MagicMock()
    mock_engine.connect.return_value.__enter__ = MagicMock(return_value=mock_conn)
    mock_engine.connect.return_value.__exit__ = MagicMock(return_value=False)

    mock_pool = MagicMock()
    mock_pool.size.return_value = 5
    mock_pool.checkedout.return_value = 0
    mock_engine.pool = mock_pool

    with patch('vendorvote.main.engine', mock_engine):
        yield mock_engine


@pytest.fixture
def client(service, session_factory, fake_redis, mock_db):
    from vendorvote.database import get_db
    from vendorvote.main import app

    def override_get_db():
        with session_factory() as db:
            yield db

    app.dependency_overrides[get_db] = override_get_db
    with patch('vendorvote.main.voting_service', service):
        with patch('vendorvote.main.redis_client', fake_redis):
            yield TestClient(app)
    app.dependency_overrides.clear()


def post_vote(client, **overrides):
    body = {"userId": "1001", "vendorId": VENDOR_V, "voteType": "regular"}
    body.update(overrides)
    return client.post("/votes", json=body)


class TestVoteEndpoint:
    def test_regular_vote(self, client):
        response = post_vote(client)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["tokensEarned"] == 10
        assert data["newBalance"] == 10
        assert data["streakBonus"] == 0
        assert data["territoryBonus"] == 0
        assert data["message"] == "Vote registered successfully!"
        assert data["voteId"]

    def test_verified_vote_with_location(self, client):
        response = post_vote(
            client,
            voteType="verified",
            photoUrl="https://img.example/api-1.jpg",
            gpsLocation={"lat": 13.7, "lng": -89.2},
            verificationConfidence=0.9,
        )

        assert response.status_code == 200
        assert response.json()["tokensEarned"] == 30

    def test_duplicate_photo(self, client):
        post_vote(client, voteType="verified", photoUrl="https://img.example/api-2.jpg")
        response = post_vote(client, voteType="verified", photoUrl="https://img.example/api-2.jpg")

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "Photo has been used before. Please take a new photo.",
        }

    def test_unknown_vendor(self, client):
        response = post_vote(client, vendorId="nope")

        assert response.status_code == 400
        assert response.json()["error"] == "Vendor not found"

    def test_invalid_vote_type(self, client):
        response = post_vote(client, voteType="super")
        assert response.status_code == 422

    def test_missing_fields(self, client):
        response = client.post("/votes", json={"userId": "1001"})
        assert response.status_code == 422


class TestVotesQuery:
    def test_history_for_user(self, client):
        post_vote(client)
        post_vote(client, vendorId=VENDOR_W)

        response = client.get("/votes", params={"userId": "1001"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data) == 2
        assert {d["vendorId"] for d in data} == {VENDOR_V, VENDOR_W}

    def test_stats_for_vendor(self, client):
        post_vote(client)
        post_vote(client, userId="2002", voteType="verified", photoUrl="https://img.example/api-3.jpg")

        response = client.get("/votes", params={"vendorId": VENDOR_V})

        assert response.status_code == 200
        assert response.json()["data"] == {
            "totalVotes": 2,
            "verifiedVotes": 1,
            "totalTokens": 40,
            "verificationRate": 50.0,
        }

    def test_stats_for_unknown_vendor(self, client):
        response = client.get("/votes", params={"vendorId": "nope"})
        assert response.status_code == 404

    def test_requires_a_filter(self, client):
        response = client.get("/votes")
        assert response.status_code == 400


class TestWalletEndpoints:
    def test_connect_distributes_pending(self, client, sink):
        post_vote(client)
        post_vote(client, vendorId=VENDOR_W)

        response = client.post("/wallet/connect", json={"userId": "1001", "walletAddress": WALLET})

        assert response.status_code == 200
        data = response.json()
        assert data["tokensDistributed"] == 20
        assert data["distributedCount"] == 2
        assert len(sink.transfers) == 2

    def test_connect_rejects_malformed_wallet(self, client):
        post_vote(client)
        response = client.post("/wallet/connect", json={"userId": "1001", "walletAddress": "0x123"})
        assert response.status_code == 422

    def test_connect_unknown_user(self, client):
        response = client.post("/wallet/connect", json={"userId": "ghost", "walletAddress": WALLET})
        assert response.status_code == 404

    def test_retry_without_wallet(self, client):
        post_vote(client)
        response = client.post("/wallet/retry-failed", json={"userId": "1001"})

        assert response.status_code == 400
        assert response.json()["detail"] == "No wallet address found for user"

    def test_retry_with_nothing_failed(self, client):
        post_vote(client)
        client.post("/wallet/connect", json={"userId": "1001", "walletAddress": WALLET})

        response = client.post("/wallet/retry-failed", json={"userId": "1001"})

        assert response.status_code == 200
        assert response.json()["tokensDistributed"] == 0
        assert response.json()["message"] == "No failed distributions could be retried successfully."

    def test_status(self, client):
        post_vote(client)

        response = client.get("/wallet/status", params={"userId": "1001"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["hasPendingTokens"] is True
        assert data["pendingCount"] == 1
        assert data["totalPendingTokens"] == 10


class TestUserEndpoints:
    def test_streak(self, client):
        post_vote(client)

        response = client.get("/users/1001/streak")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["streak"] == 1
        assert data["currentStreak"] == 1
        assert data["totalVotes"] == 1

    def test_streak_reset(self, client):
        post_vote(client)

        assert client.post("/users/1001/streak/reset").status_code == 200
        assert client.get("/users/1001/streak").json()["data"]["streak"] == 0

    def test_balance(self, client):
        post_vote(client)
        post_vote(client)

        response = client.get("/users/1001/balance")

        assert response.status_code == 200
        assert response.json()["data"]["balance"] == 15

    def test_balance_unknown_user(self, client):
        assert client.get("/users/nobody/balance").json()["data"]["balance"] == 0


class TestHealthEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready_when_dependencies_up(self, client):
        response = client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_ready_when_redis_down(self, client, fake_redis):
        with patch.object(fake_redis, "ping", side_effect=ConnectionError("down")):
            response = client.get("/ready")
        assert response.status_code == 503
        assert response.json()["detail"] == "Redis not available"

    def test_ready_when_database_down(self, client, mock_db):
        mock_db.connect.side_effect = Exception("connection refused")
        response = client.get("/ready")
        assert response.status_code == 503
        assert response.json()["detail"] == "PostgreSQL not available"


class TestMetricsEndpoint:
    def test_metrics_exposed(self, client):
        post_vote(client)

        response = client.get("/metrics")

        assert response.status_code == 200
        body = response.text
        assert "votes_total" in body
        assert "tokens_awarded_total" in body
        assert "http_requests_total" in body
