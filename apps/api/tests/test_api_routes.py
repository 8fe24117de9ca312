from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from routers.auth_scope import AuthContext, get_current_user
from services.credits import get_or_create_credit_account
from services.errors import PersistenceError
from services.generation_lock import acquire_generation_lock
from services.generation_provider import GenerationProviderError, ProviderTaskStatus
from services.session_token import create_session_token


API_USER_ID = "api-user"
OTHER_USER_ID = "api-user-other"
API_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(API_USER_ID, email='api@example.com')['token']}"}
OTHER_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(OTHER_USER_ID)['token']}"}
CRON_SECRET = "cron-secret-for-tests-0123"
CRON_HEADER = {"Authorization": f"Bearer {CRON_SECRET}"}


class _StubProvider:
    def __init__(self, state: str = "success", create_error: Exception | None = None):
        self.state = state
        self.create_error = create_error
        self.calls = 0

    async def create_task(self, **kwargs):
        self.calls += 1
        if self.create_error:
            raise self.create_error
        return f"task-{self.calls}"

    async def get_task_status(self, task_id):
        return ProviderTaskStatus(
            task_id=task_id,
            state=self.state,
            result_urls=["https://cdn.test/result.png"] if self.state == "success" else [],
            error="provider exploded" if self.state == "fail" else None,
        )


@pytest_asyncio.fixture
async def api_client(session_maker):
    provider = _StubProvider()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    with (
        patch("services.generation.async_session_maker", session_maker),
        patch("services.rewards.async_session_maker", session_maker),
        patch("services.generation.get_generation_provider", return_value=provider),
        patch("services.generation.settings.GENERATION_POLL_INTERVAL_SECONDS", 0),
    ):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client, session_maker, provider

    app.dependency_overrides.pop(get_db, None)


@pytest.mark.asyncio
async def test_credit_routes_require_session_token(api_client):
    client, _, _ = api_client
    missing = await client.get("/credits/balance")
    forged = await client.get("/credits/balance", headers={"Authorization": "Bearer not-a-token"})

    assert missing.status_code == 401
    assert forged.status_code == 401


@pytest.mark.asyncio
async def test_first_request_creates_user_with_signup_bonus(api_client):
    client, _, _ = api_client
    first = await client.get("/credits/balance", headers=API_AUTH_HEADER)
    second = await client.get("/credits/balance", headers=API_AUTH_HEADER)

    assert first.status_code == 200
    body = second.json()
    assert body["balance"] == 15
    assert body["available_balance"] == 15
    assert body["frozen_balance"] == 0
    assert body["costs"]["video"]["sora-2"] == 20

    history = await client.get("/credits/history?limit=10", headers=API_AUTH_HEADER)
    assert history.status_code == 200
    entries = history.json()["transactions"]
    assert [entry["reference_id"] for entry in entries] == [f"signup_{API_USER_ID}"]
    assert entries[0]["type"] == "earn"
    assert entries[0]["amount"] == 15


@pytest.mark.asyncio
async def test_checkin_once_per_day(api_client):
    client, _, _ = api_client
    first = await client.post("/credits/checkin", headers=API_AUTH_HEADER)
    second = await client.post("/credits/checkin", headers=API_AUTH_HEADER)
    status = await client.get("/credits/checkin", headers=API_AUTH_HEADER)

    assert first.status_code == 200
    assert first.json()["credits_earned"] == 2
    assert first.json()["new_balance"] == 17
    assert second.status_code == 409
    assert second.json()["detail"]["checkin"]["already_checked_in"] is True
    assert status.json()["checked_in_today"] is True


@pytest.mark.asyncio
async def test_image_generation_charges_and_exposes_asset(api_client):
    client, _, _ = api_client
    resp = await client.post(
        "/generation/image",
        json={"prompt": "white sneaker on sand", "model": "nano-banana", "request_id": "req-http-1"},
        headers=API_AUTH_HEADER,
    )

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["credits_spent"] == 5
    assert payload["balance_after"] == 10
    assert payload["result_url"] == "https://cdn.test/result.png"

    asset = await client.get(f"/generation/assets/{payload['asset_id']}", headers=API_AUTH_HEADER)
    assert asset.status_code == 200
    assert asset.json()["status"] == "completed"

    hidden = await client.get(f"/generation/assets/{payload['asset_id']}", headers=OTHER_AUTH_HEADER)
    assert hidden.status_code == 404

    locks = await client.get("/generation/locks", headers=API_AUTH_HEADER)
    assert locks.json() == {"locks": []}


@pytest.mark.asyncio
async def test_generation_in_progress_returns_429_with_retry_after(api_client):
    client, session_maker, provider = api_client
    await client.get("/credits/balance", headers=API_AUTH_HEADER)
    async with session_maker() as db:
        await acquire_generation_lock(API_USER_ID, db, asset_type="image", request_id="running")

    resp = await client.post(
        "/generation/image",
        json={"prompt": "desk lamp", "model": "nano-banana"},
        headers=API_AUTH_HEADER,
    )

    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) > 0
    assert resp.json()["detail"]["request_id"] == "running"
    assert provider.calls == 0

    locks = await client.get("/generation/locks", headers=API_AUTH_HEADER)
    assert [lock["asset_type"] for lock in locks.json()["locks"]] == ["image"]


@pytest.mark.asyncio
async def test_provider_failure_returns_502_without_charge(api_client):
    client, _, provider = api_client
    provider.state = "fail"

    resp = await client.post(
        "/generation/image",
        json={"prompt": "teapot", "model": "flux-1.1-ultra"},
        headers=API_AUTH_HEADER,
    )
    balance = await client.get("/credits/balance", headers=API_AUTH_HEADER)

    assert resp.status_code == 502
    assert resp.json()["detail"]["message"] == "Generation failed, no credits charged."
    assert balance.json()["available_balance"] == 15
    assert balance.json()["total_spent"] == 0


@pytest.mark.asyncio
async def test_provider_outage_returns_502(api_client):
    client, _, provider = api_client
    provider.create_error = GenerationProviderError("connect timeout")

    resp = await client.post(
        "/generation/video",
        json={"prompt": "watch on wrist", "model": "sora-2"},
        headers=OTHER_AUTH_HEADER,
    )
    assert resp.status_code == 402

    with patch("routers.auth_scope.settings.CRON_SECRET", CRON_SECRET):
        grant = await client.post(
            "/credits/grant",
            json={"user_id": OTHER_USER_ID, "amount": 50, "source": "purchase", "reference_id": "order-9"},
            headers=CRON_HEADER,
        )
    assert grant.status_code == 200

    resp = await client.post(
        "/generation/video",
        json={"prompt": "watch on wrist", "model": "sora-2"},
        headers=OTHER_AUTH_HEADER,
    )
    assert resp.status_code == 502
    balance = await client.get("/credits/balance", headers=OTHER_AUTH_HEADER)
    assert balance.json()["available_balance"] == 65


@pytest.mark.asyncio
async def test_unknown_model_is_a_bad_request(api_client):
    client, _, provider = api_client
    resp = await client.post(
        "/generation/image",
        json={"prompt": "vase", "model": "dall-e-9"},
        headers=API_AUTH_HEADER,
    )
    assert resp.status_code == 400
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_cron_routes_require_configured_secret(api_client):
    client, _, _ = api_client
    with patch("routers.auth_scope.settings.CRON_SECRET", ""):
        unconfigured = await client.post("/cron/signup-credits")
    assert unconfigured.status_code == 503

    with patch("routers.auth_scope.settings.CRON_SECRET", CRON_SECRET):
        wrong = await client.post("/cron/signup-credits", headers={"Authorization": "Bearer nope"})
        backfill = await client.post("/cron/signup-credits", headers=CRON_HEADER)
        recover = await client.post("/cron/recover-generations", headers=CRON_HEADER)

    assert wrong.status_code == 401
    assert backfill.status_code == 200
    assert backfill.json()["ok"] is True
    assert recover.status_code == 200
    assert recover.json() == {"ok": True, "recovered": 0}


@pytest.mark.asyncio
async def test_grant_replay_does_not_double_credit(api_client):
    client, _, _ = api_client
    body = {"user_id": "grant-user", "amount": 30, "source": "subscription", "reference_id": "sub_2026_10"}
    with patch("routers.auth_scope.settings.CRON_SECRET", CRON_SECRET):
        first = await client.post("/credits/grant", json=body, headers=CRON_HEADER)
        second = await client.post("/credits/grant", json=body, headers=CRON_HEADER)
        bad_source = await client.post(
            "/credits/grant", json={**body, "source": "api_call", "reference_id": "x"}, headers=CRON_HEADER
        )

    assert first.json()["balance_after"] == 30
    assert second.json()["replayed"] is True
    assert second.json()["credits_added"] == 0
    assert second.json()["balance_after"] == 30
    assert bad_source.status_code == 422


@pytest.mark.asyncio
async def test_liveness_probe(api_client):
    client, _, _ = api_client
    resp = await client.get("/health/live")
    assert resp.status_code == 200
    assert resp.json() == {"alive": True}


@pytest.mark.asyncio
async def test_current_user_dependency_ends_its_transaction(session_maker, make_user):
    await make_user("existing-user")
    async with session_maker() as db:
        existing = await get_current_user(AuthContext(user_id="existing-user"), db)
        assert not db.in_transaction()
        fresh = await get_current_user(AuthContext(user_id="fresh-user"), db)
        assert not db.in_transaction()

    assert existing.user_id == "existing-user"
    async with session_maker() as db:
        account = await get_or_create_credit_account(fresh.user_id, db)
    assert account.balance == 15


@pytest.mark.asyncio
async def test_grant_maps_user_bootstrap_failure_to_503(api_client):
    client, _, _ = api_client
    body = {"user_id": "clash-user", "amount": 10, "source": "admin", "reference_id": "fix-1", "email": "taken@example.com"}
    with (
        patch("routers.auth_scope.settings.CRON_SECRET", CRON_SECRET),
        patch("routers.credits.ensure_user", side_effect=PersistenceError("Could not create user clash-user")),
    ):
        resp = await client.post("/credits/grant", json=body, headers=CRON_HEADER)

    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_recovery_age_below_lock_ttl_is_a_bad_request(api_client):
    client, _, _ = api_client
    with patch("routers.auth_scope.settings.CRON_SECRET", CRON_SECRET):
        resp = await client.post("/cron/recover-generations?max_age_ms=1", headers=CRON_HEADER)

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_referral_pays_referrer_after_first_generation(api_client):
    client, _, _ = api_client
    await client.get("/credits/balance", headers=OTHER_AUTH_HEADER)

    registered = await client.post(
        "/rewards/referral", json={"referral_code": OTHER_USER_ID}, headers=API_AUTH_HEADER
    )
    repeated = await client.post(
        "/rewards/referral", json={"referral_code": OTHER_USER_ID}, headers=API_AUTH_HEADER
    )
    self_referral = await client.post(
        "/rewards/referral", json={"referral_code": OTHER_USER_ID}, headers=OTHER_AUTH_HEADER
    )
    assert registered.status_code == 200
    assert registered.json()["referrer_id"] == OTHER_USER_ID
    assert repeated.status_code == 409
    assert self_referral.status_code == 400

    generated = await client.post(
        "/generation/image",
        json={"prompt": "ceramic mug", "model": "nano-banana"},
        headers=API_AUTH_HEADER,
    )
    assert generated.status_code == 200

    referrer_balance = await client.get("/credits/balance", headers=OTHER_AUTH_HEADER)
    stats = await client.get("/rewards/referral", headers=OTHER_AUTH_HEADER)
    assert referrer_balance.json()["balance"] == 25
    assert stats.json()["successful_referrals"] == 1


@pytest.mark.asyncio
async def test_share_reward_route(api_client):
    client, _, _ = api_client
    body = {"platform": "instagram", "reference_id": "post-77", "share_url": "https://instagram.test/p/77"}
    first = await client.post("/rewards/share", json=body, headers=API_AUTH_HEADER)
    again = await client.post("/rewards/share", json=body, headers=API_AUTH_HEADER)
    invalid = await client.post("/rewards/share", json={"platform": "fax"}, headers=API_AUTH_HEADER)
    history = await client.get("/rewards/share", headers=API_AUTH_HEADER)

    assert first.status_code == 200
    assert first.json()["credits_earned"] == 5
    assert first.json()["new_balance"] == 20
    assert again.status_code == 409
    assert again.json()["detail"]["share"]["already_rewarded"] is True
    assert invalid.status_code == 400
    assert history.json()["total_shares"] == 1
