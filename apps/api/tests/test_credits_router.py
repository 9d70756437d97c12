import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from services.ledger import get_ledger, grant_credits
from services.session_token import create_session_token


CREDIT_USER_ID = "credit-user"
OTHER_USER_ID = "credit-user-other"
CREDIT_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(CREDIT_USER_ID)['token']}"}
OTHER_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(OTHER_USER_ID)['token']}"}


@pytest_asyncio.fixture
async def credits_client(session_maker):
    async with session_maker() as session:
        await grant_credits(
            session,
            CREDIT_USER_ID,
            credits=3,
            transaction_id="evt_seed_credits",
            transaction_type="checkout_session",
        )

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)


@pytest.mark.asyncio
async def test_consume_returns_new_balance(credits_client):
    client, session_maker = credits_client
    response = await client.post("/credits/consume", json={"cost": 2}, headers=CREDIT_AUTH_HEADER)

    assert response.status_code == 200
    assert response.json() == {"userId": CREDIT_USER_ID, "newCredits": 1}
    async with session_maker() as db:
        state = await get_ledger(db, CREDIT_USER_ID)
    assert state.credits == 1
    assert state.total_credits == 3


@pytest.mark.asyncio
async def test_consume_by_action_uses_configured_cost(credits_client):
    client, _ = credits_client
    response = await client.post("/credits/consume", json={"action": "ats_simulation"}, headers=CREDIT_AUTH_HEADER)

    assert response.status_code == 200
    assert response.json()["newCredits"] == 2


@pytest.mark.asyncio
async def test_consume_more_than_balance_is_rejected_without_mutation(credits_client):
    client, session_maker = credits_client
    response = await client.post("/credits/consume", json={"cost": 4}, headers=CREDIT_AUTH_HEADER)

    assert response.status_code == 400
    assert response.json() == {"message": "Insufficient credits"}
    async with session_maker() as db:
        assert (await get_ledger(db, CREDIT_USER_ID)).credits == 3


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [b"{}", b'{"cost": 0}', b'{"cost": -1}', b'{"cost": 1.5}', b'{"cost": NaN}', b'{"cost": Infinity}'],
)
async def test_consume_rejects_missing_or_invalid_cost(credits_client, body):
    client, _ = credits_client
    response = await client.post(
        "/credits/consume",
        content=body,
        headers={**CREDIT_AUTH_HEADER, "content-type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json() == {"message": "Missing or invalid userId or cost."}


@pytest.mark.asyncio
async def test_consume_for_unknown_user_is_rejected(credits_client):
    client, _ = credits_client
    response = await client.post("/credits/consume", json={"cost": 1}, headers=OTHER_AUTH_HEADER)

    assert response.status_code == 400
    assert response.json() == {"message": "User not found"}


@pytest.mark.asyncio
async def test_consume_requires_identity_and_matching_scope(credits_client):
    client, _ = credits_client
    unauthenticated = await client.post("/credits/consume", json={"cost": 1})
    assert unauthenticated.status_code == 401

    cross_user = await client.post(
        "/credits/consume",
        json={"cost": 1, "user_id": CREDIT_USER_ID},
        headers=OTHER_AUTH_HEADER,
    )
    assert cross_user.status_code == 403


@pytest.mark.asyncio
async def test_credit_summary_lists_transactions(credits_client):
    client, _ = credits_client
    response = await client.get("/credits", headers=CREDIT_AUTH_HEADER)

    assert response.status_code == 200
    payload = response.json()
    assert payload["credits"] == 3
    assert payload["totalCredits"] == 3
    assert payload["costs"] == {"cv_optimization": 1, "ats_simulation": 1}
    assert [entry["id"] for entry in payload["transactions"]] == ["evt_seed_credits"]

    missing = await client.get("/credits", headers=OTHER_AUTH_HEADER)
    assert missing.status_code == 404
